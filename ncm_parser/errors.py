"""Errors raised while parsing and decrypting NCM containers."""


class NCMError(Exception):
    """Base class for every failure the parser reports."""

    message = "NCM error."

    def __init__(self, message=None):
        super().__init__(message or self.message)


class EndOfFile(NCMError, EOFError):
    message = "The ncm file ends unexpectedly."


class InvalidHeader(NCMError):
    message = 'The ncm file header does not match "CTENFDAM".'


class DecryptRC4KeyFailed(NCMError):
    message = "Decrypt ncm RC4 key failed."


class DecryptMetadataFailed(NCMError):
    message = "Decrypt ncm metadata failed."


class ParseMetadataFailed(NCMError):
    message = "Parse ncm metadata into struct failed."

    def __init__(self, field=None, message=None):
        self.field = field
        if message is None and field is not None:
            message = f"{self.message} (field: {field})"
        super().__init__(message)
