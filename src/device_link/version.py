"""Version information for the device link core."""

APP_VERSION = "1.0.0"
