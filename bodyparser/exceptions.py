class BodyParserError(ValueError):
    """Base error class for the body parser."""

    pass


class MalformedBodyError(BodyParserError):
    """Raised when the request body cannot be tokenized at all - for example a
    multipart body with broken framing, a missing boundary or invalid JSON.

    This is distinct from a limit violation: violations are collected and
    reported through a :class:`~bodyparser.bodyparser.Failure`, while a
    malformed body aborts the decode.
    """

    pass


class FileError(BodyParserError, OSError):
    """Exception class for problems storing an uploaded file."""

    pass
