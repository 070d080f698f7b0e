"""
Module containing various utility functions and classes.
"""
from argparse import Namespace
from dataclasses import dataclass, fields
from os import access, R_OK
from pathlib import Path
from typing import Union


# Classes --------------------------------------------------------------------------------------------------------------
@dataclass(frozen=True)
class Config:
    """Frozen settings that can be built from parsed command line arguments."""

    @classmethod
    def from_args(cls, args: Namespace):
        """
        Builds an instance from the attributes of ``args`` named like fields of the class.

        Args:
            args: Parsed arguments, e.g. from argparse; attributes without a matching field are ignored.

        Returns:
            An instance with every matching field set from ``args`` and the rest left at their defaults.
        """
        return cls(**{f.name: getattr(args, f.name) for f in fields(cls) if hasattr(args, f.name)})


# Functions ------------------------------------------------------------------------------------------------------------
def is_readable_file(file: Union[str, Path]) -> bool:
    """
    Checks if a file exists, is a regular file and can be read by this process.

    Args:
        file: Path to the file to check.

    Returns:
        True if the file can be opened for reading, False otherwise.
    """
    if not isinstance(file, Path):
        file = Path(file)
    return file.is_file() and access(file, R_OK)
