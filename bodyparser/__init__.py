__version__ = "0.1.0"

from .bodyparser import (
    DEFAULT_CONFIG,
    Failure,
    File,
    FormCollector,
    Route,
    Skip,
    Success,
    dispatch,
    parse_body,
)
from .decoder import FileStream, FormDecoder, create_form_decoder
from .exceptions import BodyParserError, FileError, MalformedBodyError
from .fields import parse_field_path, set_field
from .limits import Limits, Violation, ViolationKind, parse_size

__all__ = (
    "DEFAULT_CONFIG",
    "BodyParserError",
    "Failure",
    "File",
    "FileError",
    "FileStream",
    "FormCollector",
    "FormDecoder",
    "Limits",
    "MalformedBodyError",
    "Route",
    "Skip",
    "Success",
    "Violation",
    "ViolationKind",
    "create_form_decoder",
    "dispatch",
    "parse_body",
    "parse_field_path",
    "parse_size",
    "set_field",
)
