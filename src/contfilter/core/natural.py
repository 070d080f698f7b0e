"""
Natural ("strnum") ordering of read identifiers.

This is the ordering used by ``samtools sort -n``: runs of digits are compared
as unsigned integers, ignoring leading zeros, and everything else is compared
by code point.
"""
from functools import cmp_to_key
from typing import Union


# Constants ------------------------------------------------------------------------------------------------------------
_ZERO, _NINE = ord('0'), ord('9')


# Functions ------------------------------------------------------------------------------------------------------------
def _is_digit(c: int) -> bool: return _ZERO <= c <= _NINE


def strnum_cmp(a: Union[bytes, str], b: Union[bytes, str]) -> int:
    """
    Compares two identifiers in natural order.

    Args:
        a: First identifier.
        b: Second identifier.

    Returns:
        A negative number if ``a`` sorts before ``b``, zero if they are equivalent and a positive number otherwise.
        Identifiers that only differ by leading zeros in a digit run are equivalent.

    Examples:
        >>> strnum_cmp(b'read2', b'read10') < 0
        True
        >>> strnum_cmp(b'read02', b'read2')
        0
    """
    if isinstance(a, str): a = a.encode()
    if isinstance(b, str): b = b.encode()
    i, j, len_a, len_b = 0, 0, len(a), len(b)
    while i < len_a and j < len_b:
        if not (_is_digit(a[i]) and _is_digit(b[j])):
            if a[i] != b[j]: return a[i] - b[j]
            i += 1
            j += 1
            continue
        # Skip leading zeros, then digits common to both runs
        while i < len_a and a[i] == _ZERO: i += 1
        while j < len_b and b[j] == _ZERO: j += 1
        while i < len_a and j < len_b and _is_digit(a[i]) and a[i] == b[j]:
            i += 1
            j += 1
        a_digit = i < len_a and _is_digit(a[i])
        b_digit = j < len_b and _is_digit(b[j])
        if a_digit and b_digit:
            # First differing digit decides, unless one run is longer
            diff = a[i] - b[j]
            while i < len_a and j < len_b and _is_digit(a[i]) and _is_digit(b[j]):
                i += 1
                j += 1
            if i < len_a and _is_digit(a[i]): return 1
            if j < len_b and _is_digit(b[j]): return -1
            return diff
        if a_digit: return 1
        if b_digit: return -1
    # Everything compared was equal; whichever has characters left is greater
    return (len_a - i > 0) - (len_b - j > 0)


natural_key = cmp_to_key(strnum_cmp)
