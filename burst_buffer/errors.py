class BurstBufferError(Exception):
    """Raised back to the requester when a burst buffer request is refused."""


class InvalidRequestError(BurstBufferError):
    pass


class PermissionDeniedError(BurstBufferError):
    pass


class LimitExceededError(BurstBufferError):
    pass


class ConfigError(BurstBufferError):
    pass
