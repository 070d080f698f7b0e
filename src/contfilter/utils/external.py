"""
Module for managing external programs such as samtools.
"""
from pathlib import Path
from subprocess import Popen, PIPE, DEVNULL
from threading import Thread
from typing import Optional, Union, BinaryIO

from contfilter import ContfilterError
from contfilter.utils import is_readable_file
from contfilter.utils.resources import RESOURCES


# Exceptions and Warnings ----------------------------------------------------------------------------------------------
class ExternalProgramError(ContfilterError): pass
class OpenError(ExternalProgramError):
    """Raised when an external program or its input file cannot be opened."""
class SubprocessError(ExternalProgramError):
    """Raised when an external program exits with a non-zero status."""


# Classes --------------------------------------------------------------------------------------------------------------
class ProcessMonitor:
    """
    Waits for a subprocess to exit in a background thread.

    The thread drains the process's diagnostic pipe (if any) so the process can never block on a full stderr buffer,
    then reaps it. ``join`` blocks until that has happened and raises if the process failed.

    Examples:
        >>> proc = Popen(['samtools', 'view', 'in.bam'], stdout=PIPE, stderr=PIPE)
        >>> monitor = ProcessMonitor(proc, 'samtools', proc.stderr)
        >>> ...
        >>> monitor.join()
    """
    def __init__(self, proc: Popen, name: str, diagnostics: Optional[BinaryIO] = None):
        self._proc = proc
        self._name = name
        self._diagnostics = diagnostics
        self._output = b''
        self._terminated = False
        self._thread = Thread(target=self._worker, name=f'monitor-{name}', daemon=True)
        self._thread.start()

    def __repr__(self): return f'ProcessMonitor({self._name}, pid={self._proc.pid})'

    def _worker(self):
        if self._diagnostics is not None: self._output = self._diagnostics.read()
        self._proc.wait()

    @property
    def name(self) -> str: return self._name

    @property
    def returncode(self) -> Optional[int]: return self._proc.returncode

    @property
    def output(self) -> bytes:
        """Diagnostic output captured from the process, available once it has exited."""
        return self._output

    def is_done(self) -> bool: return not self._thread.is_alive()

    def terminate(self):
        """Stops a process that is still running; its exit status is then not treated as a failure."""
        if self._proc.poll() is None:
            try:
                self._proc.terminate()
                self._terminated = True
            except OSError: pass

    def join(self):
        """
        Waits for the process to exit.

        Raises:
            SubprocessError: If the process exited with a non-zero status and was not terminated by us.
        """
        self._thread.join()
        if self._diagnostics is not None: self._diagnostics.close()
        if not self._terminated and self._proc.returncode != 0:
            raise SubprocessError(
                f"{self._name} failed (code {self._proc.returncode}): "
                f"{self._output.decode('utf-8', errors='replace').strip()}"
            )


class ExternalProgram:
    """
    Base class to handle an external program to be executed in subprocesses.

    Args:
        program: Name of the program, looked up in PATH.
        binary: Explicit path to the executable, skipping the PATH lookup.

    Raises:
        OpenError: If the program cannot be found.
    """
    def __init__(self, program: str, binary: Union[str, Path] = None):
        if binary is None: binary = RESOURCES.find_binary(program)
        elif not (binary := Path(binary)).is_file(): binary = None
        if not binary: raise OpenError(f'Could not find {program}')
        self._program = program
        self._binary = binary

    def __repr__(self): return f'{self._program}({self._binary})'

    @property
    def program(self) -> str: return self._program

    @property
    def binary(self) -> Path: return self._binary

    def start(self, args: list[str], stdin=DEVNULL, stdout=PIPE, stderr=PIPE) -> Popen:
        """
        Starts the program without waiting for it.

        Raises:
            OpenError: If the process cannot be started.
        """
        cmd = [str(self._binary)] + [str(i) for i in args]
        try: return Popen(cmd, stdin=stdin, stdout=stdout, stderr=stderr)
        except OSError as e: raise OpenError(f'{self._program} failed to start: {e}') from e

    def run(self, args: list[str]) -> bytes:
        """
        Blocking execution for short tasks, returning stdout.

        Raises:
            SubprocessError: If the program exits with a non-zero status.
        """
        with self.start(args) as proc:
            stdout, stderr = proc.communicate()
        if proc.returncode != 0:
            raise SubprocessError(
                f"{self._program} failed (code {proc.returncode}): {stderr.decode('utf-8', errors='replace').strip()}"
            )
        return stdout


class Samtools(ExternalProgram):
    """
    A wrapper for samtools, used to decode BAM files to SAM text and to encode SAM text back to BAM.

    Requires `samtools` to be in the system's PATH unless a binary is given.

    Examples:
        >>> samtools = Samtools()
        >>> header = samtools.header('sample.bam')
        >>> cursor = SamCursor.from_process(samtools, samtools.view_args('sample.bam'), 'sample.bam')
    """
    def __init__(self, binary: Union[str, Path] = None):
        super().__init__('samtools', binary)

    @staticmethod
    def check_input(path: Union[str, Path]):
        """
        Raises:
            OpenError: If the file does not exist or cannot be read.
        """
        if not is_readable_file(path): raise OpenError(f'failed to open {path}')

    def view_args(self, path: Union[str, Path]) -> list[str]:
        """Arguments decoding ``path`` to header-less SAM text on stdout."""
        self.check_input(path)
        return ['view', str(path)]

    @staticmethod
    def write_args(path: Union[str, Path]) -> list[str]:
        """Arguments encoding SAM text from stdin into the BAM file ``path``."""
        return ['view', '-b', '-o', str(path), '-']

    def header(self, path: Union[str, Path]) -> bytes:
        """Returns the SAM header text of ``path``."""
        self.check_input(path)
        try: return self.run(['view', '-H', str(path)])
        except SubprocessError as e: raise SubprocessError(f'failed to read header of {path}: {e}') from e
