"""
Cursors over name-sorted SAM text and a sink re-encoding SAM text, both backed by external processes.
"""
from pathlib import Path
from subprocess import PIPE, STDOUT
import sys
from typing import Optional, Union, BinaryIO, Iterator
import logging

from contfilter.containers.record import AlignmentRecord, MalformedRecordError
from contfilter.core.natural import strnum_cmp
from contfilter.io import ScanError
from contfilter.utils.external import ExternalProgram, ProcessMonitor, Samtools, SubprocessError


# Constants ------------------------------------------------------------------------------------------------------------
_LOGGER = logging.getLogger(__name__)


# Classes --------------------------------------------------------------------------------------------------------------
class SamCursor:
    """
    A forward-only cursor over a stream of SAM text sorted by read name (``samtools sort -n``).

    The cursor holds at most one record of lookahead: ``peek`` reads and caches the next record, ``advance`` drops it.
    Every record is checked against the previous one and the stream is rejected as soon as the natural order of read
    names is violated. Leading ``@`` header lines are collected rather than yielded.

    Args:
        handle: Binary stream of SAM text.
        name: Name of the stream used in diagnostics.
        validate: Check that each record carries the fields needed for scoring.
        monitor: Monitor of the process writing to ``handle``, owned by the cursor if given.

    Examples:
        >>> with SamCursor.open('contaminant.bam') as cursor:
        ...     for record in cursor.find_all(b'read1'):
        ...         print(record.length)
    """
    __slots__ = ('_handle', '_lines', '_name', '_validate', '_monitor', '_pending', '_last_id', '_exhausted',
                 '_closed', '_header', '_in_header', 'line_number')

    def __init__(self, handle: BinaryIO, name: str = 'stdin', validate: bool = True,
                 monitor: Optional[ProcessMonitor] = None):
        self._handle = handle
        self._lines = iter(handle)
        self._name = name
        self._validate = validate
        self._monitor = monitor
        self._pending: Optional[AlignmentRecord] = None
        self._last_id: Optional[bytes] = None
        self._exhausted = False
        self._closed = False
        self._header: list[bytes] = []
        self._in_header = True
        self.line_number = 0

    @classmethod
    def from_process(cls, program: ExternalProgram, args: list[str], name: str = None,
                     validate: bool = True) -> 'SamCursor':
        """
        Starts ``program`` and reads SAM text from its stdout.

        Raises:
            OpenError: If the process cannot be started.
        """
        name = name or program.program
        proc = program.start(args, stdout=PIPE, stderr=PIPE)
        _LOGGER.debug('Reading %s from %s (pid %d)', name, program.program, proc.pid)
        return cls(proc.stdout, name, validate, ProcessMonitor(proc, f'{program.program} ({name})', proc.stderr))

    @classmethod
    def open(cls, path: Union[str, Path], samtools: Samtools = None, validate: bool = True) -> 'SamCursor':
        """
        Decodes an alignment file with ``samtools view``.

        Raises:
            OpenError: If the file cannot be read or samtools cannot be started.
        """
        samtools = samtools or Samtools()
        return cls.from_process(samtools, samtools.view_args(path), str(path), validate)

    @classmethod
    def from_stdin(cls, validate: bool = True) -> 'SamCursor':
        """Reads already decoded SAM text from standard input."""
        return cls(sys.stdin.buffer, 'stdin', validate)

    def __repr__(self): return f'SamCursor({self._name}, line={self.line_number})'
    def __enter__(self): return self
    def __exit__(self, exc_type, exc_val, exc_tb): self.close()
    def __iter__(self) -> Iterator[AlignmentRecord]: return self

    def __next__(self) -> AlignmentRecord:
        if (record := self.peek()) is None: raise StopIteration
        self.advance()
        return record

    @property
    def name(self) -> str: return self._name

    @property
    def exhausted(self) -> bool: return self._exhausted

    @property
    def header(self) -> bytes:
        """The ``@`` lines preceding the first record; reading it scans up to the first record."""
        self.peek()
        return b''.join(self._header)

    def peek(self) -> Optional[AlignmentRecord]:
        """
        Returns the next record without consuming it, or None at the end of the stream.

        Raises:
            ScanError: If the stream cannot be read, the next line is malformed or it breaks the sort order.
            SubprocessError: If the end of the stream is reached and the decoder exited with a non-zero status.
        """
        if self._pending is not None or self._exhausted: return self._pending
        try:
            for line in self._lines:
                self.line_number += 1
                if self._in_header and line.startswith(b'@'):
                    self._header.append(line)
                    continue
                self._in_header = False
                self._pending = self._accept(line)
                return self._pending
        except OSError as e:
            raise ScanError(f'read failed: {e}', self._name, self.line_number) from e
        self._exhausted = True
        _LOGGER.debug('Reached the end of %s after %d lines', self._name, self.line_number)
        if self._monitor is not None:
            # The decoder has closed its output, so a failure is known now
            monitor, self._monitor = self._monitor, None
            self._handle.close()
            monitor.join()
        return None

    def advance(self):
        """Drops the cached record so the next ``peek`` reads a new one."""
        self._pending = None

    def find(self, read_id: bytes) -> Optional[AlignmentRecord]:
        """
        Fast-forwards to the next record named ``read_id`` and consumes it.

        Records named before ``read_id`` are skipped. If a record named after ``read_id`` is reached first, it is left
        cached for later calls and None is returned.

        Raises:
            ScanError, SubprocessError: As for ``peek``.
        """
        while (record := self.peek()) is not None:
            if record.read_id == read_id:
                self.advance()
                return record
            if strnum_cmp(record.read_id, read_id) < 0: self.advance()
            else: return None
        return None

    def find_all(self, read_id: bytes) -> Iterator[AlignmentRecord]:
        """Yields and consumes every consecutive record named ``read_id``."""
        return iter(lambda: self.find(read_id), None)

    def close(self):
        """
        Releases the stream and joins the decoding process, if any.

        A decoder that has not reached the end of its output is terminated first. A decoder that has is already joined
        by ``peek``.

        Raises:
            SubprocessError: If the decoder exited with a non-zero status on its own.
        """
        if self._closed: return
        self._closed = True
        if self._monitor is None: return
        self._monitor.terminate()
        self._handle.close()
        self._monitor.join()

    def _accept(self, line: bytes) -> AlignmentRecord:
        try:
            record = AlignmentRecord.from_line(line)
            if self._validate: record.validate()
        except MalformedRecordError as e:
            raise ScanError(str(e), self._name, self.line_number) from e
        read_id = record.read_id
        if self._last_id is not None and strnum_cmp(self._last_id, read_id) > 0:
            raise ScanError(
                f"sorting order violated: {read_id.decode('ascii', 'replace')!r} after "
                f"{self._last_id.decode('ascii', 'replace')!r}", self._name, self.line_number
            )
        self._last_id = read_id
        return record


class SamSink:
    """
    Writes SAM text, typically into the stdin of an encoding process.

    The header, if any, must be written before the first record. Closing the sink signals the end of input; ``wait``
    then blocks until the encoder has exited.

    Examples:
        >>> with SamSink.open('filtered.bam') as sink:
        ...     sink.write_header(header)
        ...     sink.write(record)
    """
    __slots__ = ('_handle', '_name', '_monitor', '_closed', '_waited', '_broken', '_header_written', 'records_written')

    def __init__(self, handle: BinaryIO, name: str = 'stdout', monitor: Optional[ProcessMonitor] = None):
        self._handle = handle
        self._name = name
        self._monitor = monitor
        self._closed = False
        self._waited = False
        self._broken = False
        self._header_written = False
        self.records_written = 0

    @classmethod
    def from_process(cls, program: ExternalProgram, args: list[str], name: str = None) -> 'SamSink':
        """
        Starts ``program`` and writes SAM text to its stdin. Its stdout and stderr are captured as diagnostics.

        Raises:
            OpenError: If the process cannot be started.
        """
        name = name or program.program
        proc = program.start(args, stdin=PIPE, stdout=PIPE, stderr=STDOUT)
        _LOGGER.debug('Writing %s through %s (pid %d)', name, program.program, proc.pid)
        return cls(proc.stdin, name, ProcessMonitor(proc, f'{program.program} ({name})', proc.stdout))

    @classmethod
    def open(cls, path: Union[str, Path], samtools: Samtools = None) -> 'SamSink':
        """Encodes the written SAM text into the BAM file ``path`` with ``samtools view -b``."""
        samtools = samtools or Samtools()
        return cls.from_process(samtools, samtools.write_args(path), str(path))

    def __repr__(self): return f'SamSink({self._name}, records={self.records_written})'

    def __enter__(self): return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        self.wait()

    @property
    def name(self) -> str: return self._name

    def write_header(self, header: bytes):
        """
        Writes the header text verbatim, once, before any record.

        Raises:
            ValueError: If a header or a record has already been written.
        """
        if self._header_written or self.records_written:
            raise ValueError('the header must be written once, before any record')
        self._header_written = True
        if not header: return
        if not header.endswith(b'\n'): header += b'\n'
        self._write(header)

    def write(self, *records: Union[AlignmentRecord, bytes]):
        """Writes records as tab-separated lines, in the order given."""
        for record in records:
            self._write(bytes(record) + b'\n')
            self.records_written += 1

    def close(self):
        """Signals the end of input."""
        if self._closed: return
        self._closed = True
        if self._monitor is None:
            self._handle.flush()
            return
        try: self._handle.close()
        except BrokenPipeError: self._broken = True

    def wait(self):
        """
        Blocks until the encoder has exited, logging anything it printed.

        Raises:
            SubprocessError: If the encoder failed or stopped reading its input early.
        """
        if self._monitor is None or self._waited: return
        self._waited = True
        try: self._monitor.join()
        finally:
            if output := self._monitor.output.strip():
                _LOGGER.warning('%s output:\n%s', self._monitor.name, output.decode('utf-8', errors='replace'))
        if self._broken: raise SubprocessError(f'{self._monitor.name} stopped reading its input')

    def _write(self, data: bytes):
        if self._closed: raise ValueError(f'write to closed sink {self._name}')
        try: self._handle.write(data)
        except BrokenPipeError:
            self._broken = True
            self.close()
            self.wait()
