"""
Resource management, currently the lookup of external binaries.
"""
from functools import lru_cache
from shutil import which
from pathlib import Path
from typing import Optional


# Classes --------------------------------------------------------------------------------------------------------------
class Resources:
    """
    Manages global resources such as external binaries.
    """
    @staticmethod
    @lru_cache(maxsize=None)
    def find_binary(program_name: str) -> Optional[Path]:
        """
        Locates an executable in the system PATH.
        Returns the Path object if found, else None.
        """
        if path := which(program_name): return Path(path)
        return None


# Constants ------------------------------------------------------------------------------------------------------------
RESOURCES = Resources()
