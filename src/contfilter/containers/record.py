"""
Module for alignment records as emitted by ``samtools view``.
"""
from typing import NamedTuple, Sequence

from contfilter import ContfilterError


# Exceptions and Warnings ----------------------------------------------------------------------------------------------
class MalformedRecordError(ContfilterError):
    """Raised when the fields of an alignment record cannot be extracted."""


# Classes --------------------------------------------------------------------------------------------------------------
class ScoredAlignment(NamedTuple):
    """Length, edit distance and the score derived from them for one alignment."""
    length: int
    edit_distance: int
    score: float


class AlignmentRecord:
    """
    A single tab-separated alignment line, kept as its original fields.

    Only the read name (column 1), reference name (column 3), sequence (column 10) and the ``nM:i:`` edit distance
    tag are interpreted; everything else is carried through untouched so the record can be written back verbatim.

    Attributes:
        fields (tuple[bytes, ...]): The columns of the line, in order.

    Examples:
        >>> line = b'\\t'.join([b'read1', b'0', b'chr1', b'100', b'255', b'4M', b'*', b'0', b'0', b'ACGT', b'IIII',
        ...                      b'NH:i:1', b'HI:i:1', b'AS:i:3', b'nM:i:1'])
        >>> rec = AlignmentRecord.from_line(line)
        >>> rec.read_id, rec.length, rec.edit_distance
        (b'read1', 4, 1)
    """
    MIN_FIELDS = 15
    TAG_COLUMN = 14
    EDIT_DISTANCE_TAG = b'nM:i:'
    __slots__ = ('fields', '_edit_distance')

    def __init__(self, fields: Sequence[bytes]):
        self.fields = tuple(fields)
        self._edit_distance = None

    @classmethod
    def from_line(cls, line: bytes) -> 'AlignmentRecord':
        """
        Splits a line into a record.

        Args:
            line: One line of SAM text, with or without its trailing newline.

        Raises:
            MalformedRecordError: If the line is empty.
        """
        if not (line := line.strip()): raise MalformedRecordError('empty alignment record')
        return cls(line.split(b'\t'))

    def __repr__(self): return f"AlignmentRecord({self.read_id.decode('ascii', 'replace')}, {self.reference_name.decode('ascii', 'replace')})"
    def __len__(self): return len(self.fields)
    def __eq__(self, other): return isinstance(other, AlignmentRecord) and self.fields == other.fields
    def __hash__(self): return hash(self.fields)
    def __bytes__(self): return b'\t'.join(self.fields)

    @property
    def read_id(self) -> bytes: return self.fields[0]

    @property
    def reference_name(self) -> bytes:
        self._check_width()
        return self.fields[2]

    @property
    def length(self) -> int:
        self._check_width()
        return len(self.fields[9])

    @property
    def edit_distance(self) -> int:
        if self._edit_distance is None: self._edit_distance = self._parse_edit_distance()
        return self._edit_distance

    def validate(self) -> 'AlignmentRecord':
        """Checks that every interpreted field can be extracted, returning the record."""
        _ = self.edit_distance
        return self

    def scored(self, penalty: float) -> ScoredAlignment:
        """
        Scores the alignment as ``length - edit_distance * penalty``.

        Args:
            penalty: Score subtracted per edit.

        Raises:
            MalformedRecordError: If the length or edit distance cannot be extracted.
        """
        length, edit_distance = self.length, self.edit_distance
        return ScoredAlignment(length, edit_distance, length - edit_distance * penalty)

    def _check_width(self):
        if len(self.fields) < self.MIN_FIELDS:
            raise MalformedRecordError(f'expected at least {self.MIN_FIELDS} fields, found {len(self.fields)}')

    def _parse_edit_distance(self) -> int:
        self._check_width()
        prefix = self.EDIT_DISTANCE_TAG
        for tag in self.fields[self.TAG_COLUMN:]:
            if tag.startswith(prefix):
                try: return int(tag[len(prefix):])
                except ValueError:
                    raise MalformedRecordError(f"unparsable edit distance in tag {tag.decode('ascii', 'replace')!r}") from None
        raise MalformedRecordError(
            f"no {prefix.decode()} tag at or after column {self.TAG_COLUMN + 1} "
            f"(found {self.fields[self.TAG_COLUMN].decode('ascii', 'replace')!r})"
        )
