class XrayLinkError(Exception):
    pass


class ParseError(XrayLinkError, ValueError):
    UNSUPPORTED_FORMAT = "UnsupportedFormat"
    BASE64_DECODE_FAILED = "Base64DecodeFailed"
    INVALID_JSON = "InvalidJson"
    INVALID_URL = "InvalidUrl"
    MISSING_REQUIRED_FIELDS = "MissingRequiredFields"

    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


class ValidationError(XrayLinkError, ValueError):
    pass


class ProcessError(XrayLinkError, RuntimeError):
    pass


class NetworkError(XrayLinkError, RuntimeError):
    pass


class StatsQueryError(NetworkError):
    pass


class SystemProxyError(NetworkError):
    pass


class ConfigWriteError(XrayLinkError, OSError):
    pass


class SubscriptionError(NetworkError):
    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status
