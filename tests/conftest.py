from shutil import which
import io
import stat

import pytest


FAKE_SAMTOOLS = """#!/bin/sh
case "$1 $2" in
  "view -H") grep '^@' "$3" || true ;;
  "view -b") cat > "$4" ;;
  view*) grep -v '^@' "$2" || true ;;
  *) echo "unsupported: $*" >&2; exit 1 ;;
esac
"""

HEADER = b'@HD\tVN:1.6\tSO:queryname\n@SQ\tSN:chr1\tLN:1000\n@SQ\tSN:ERCC-00002\tLN:1000\n'

requires_sh = pytest.mark.skipif(which('sh') is None or which('cat') is None, reason='needs a POSIX shell')


def sam_line(read_id: str, length: int, edits: int, reference: str = 'chr1', flag: int = 0) -> bytes:
    """A STAR-style SAM line: 11 mandatory columns then NH, HI, AS and nM tags."""
    return '\t'.join([
        read_id, str(flag), reference, '100', '255', f'{length}M', '*', '0', '0', 'A' * length, 'I' * length,
        'NH:i:1', 'HI:i:1', f'AS:i:{length - edits}', f'nM:i:{edits}'
    ]).encode()


def sam_stream(*lines: bytes) -> io.BytesIO:
    return io.BytesIO(b''.join(line + b'\n' for line in lines))


def write_script(path, text: str):
    path.write_text(text)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_samtools(tmp_path):
    """An executable mimicking the samtools view calls contfilter makes, over SAM text files."""
    return write_script(tmp_path / 'samtools', FAKE_SAMTOOLS)
