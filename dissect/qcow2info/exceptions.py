class Error(Exception):
    pass


class InvalidHeaderError(Error):
    pass


class ShortInputError(InvalidHeaderError):
    pass


class InvalidSignature(InvalidHeaderError):
    pass


class UnsupportedVersionError(InvalidHeaderError):
    pass


class InvalidExtensionError(Error):
    pass


class TruncatedExtensionError(InvalidExtensionError):
    pass


class MissingTerminatorError(InvalidExtensionError):
    pass
