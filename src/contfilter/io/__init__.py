"""
Module for streaming alignment records to and from external decoders and encoders.
"""
from contfilter import ContfilterError
from contfilter.containers.record import MalformedRecordError


# Exceptions and Warnings ----------------------------------------------------------------------------------------------
class ScanError(ContfilterError):
    """
    Raised when a line of an alignment stream cannot be accepted: an unreadable stream, a malformed record or a
    record out of name-sorted order.

    Attributes:
        source (str): Name of the stream (usually the file path).
        line_number (int): One-based line number of the offending line, 0 if not known.
    """
    def __init__(self, message: str, source: str, line_number: int = 0):
        self.source = source
        self.line_number = line_number
        location = f'{source}:{line_number}' if line_number else source
        super().__init__(f'{location}: {message}')
