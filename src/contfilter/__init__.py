"""
Contamination filtering of name-sorted sequence alignments.

A sample alignment stream is walked in lock-step with one or more alignment
streams of the same reads against suspected contaminant references. Reads that
align at least as well to a contaminant as to the sample reference are removed.

Examples:
    >>> from contfilter.engines.filter import ContaminationFilter, FilterConfig
    >>> from contfilter.io.sam import SamCursor, SamSink
"""


# Exceptions and Warnings ----------------------------------------------------------------------------------------------
class ContfilterError(Exception):
    """Base class for all fatal errors raised by contfilter."""


# Constants ------------------------------------------------------------------------------------------------------------
__version__ = '0.1.0'
