APP_NAME = "xraylink"
APP_VERSION = "0.1.0"
