import io

import pytest
from contfilter.containers.record import AlignmentRecord, MalformedRecordError
from contfilter.io import ScanError
from contfilter.io.sam import SamCursor, SamSink
from contfilter.utils.external import ExternalProgram, OpenError, ProcessMonitor, SubprocessError, Samtools

from conftest import sam_line, sam_stream, requires_sh, HEADER


def ids(records):
    return [r.read_id for r in records]


class TestSamCursor:
    def test_iteration(self):
        cursor = SamCursor(sam_stream(sam_line('r1', 60, 0), sam_line('r1', 61, 0), sam_line('r2', 62, 0)))
        assert ids(cursor) == [b'r1', b'r1', b'r2']
        assert cursor.line_number == 3
        assert cursor.exhausted

    def test_peek_does_not_consume(self):
        cursor = SamCursor(sam_stream(sam_line('r1', 60, 0), sam_line('r2', 60, 0)))
        first = cursor.peek()
        assert cursor.peek() is first
        cursor.advance()
        assert cursor.peek().read_id == b'r2'

    def test_end_of_stream_is_idempotent(self):
        cursor = SamCursor(sam_stream(sam_line('r1', 60, 0)))
        next(cursor)
        assert cursor.peek() is None
        assert cursor.peek() is None
        assert cursor.find(b'r9') is None
        with pytest.raises(StopIteration):
            next(cursor)

    def test_empty_stream(self):
        cursor = SamCursor(io.BytesIO(b''))
        assert cursor.peek() is None
        assert cursor.header == b''

    def test_header_is_collected(self):
        cursor = SamCursor(io.BytesIO(HEADER + sam_line('r1', 60, 0) + b'\n'))
        assert cursor.header == HEADER
        assert ids(cursor) == [b'r1']
        assert cursor.line_number == 4

    def test_natural_order_is_accepted(self):
        cursor = SamCursor(sam_stream(*(sam_line(f'read{i}', 60, 0) for i in (1, 2, 9, 10, 11, 100))))
        assert len(list(cursor)) == 6

    def test_order_violation(self):
        cursor = SamCursor(sam_stream(sam_line('read2', 60, 0), sam_line('read10', 60, 0), sam_line('read3', 60, 0)),
                           name='sample.bam')
        next(cursor)
        next(cursor)
        with pytest.raises(ScanError, match='sorting order violated') as e:
            cursor.peek()
        assert e.value.source == 'sample.bam'
        assert e.value.line_number == 3

    def test_malformed_line(self):
        cursor = SamCursor(sam_stream(sam_line('r1', 60, 0), b'r2\t0\tchr1'))
        next(cursor)
        with pytest.raises(ScanError, match='at least 15 fields') as e:
            cursor.peek()
        assert e.value.line_number == 2
        assert isinstance(e.value.__cause__, MalformedRecordError)

    def test_empty_line(self):
        cursor = SamCursor(sam_stream(sam_line('r1', 60, 0), b'', sam_line('r2', 60, 0)))
        next(cursor)
        with pytest.raises(ScanError, match='empty'):
            cursor.peek()

    def test_without_validation(self):
        cursor = SamCursor(sam_stream(b'r1', b'r2\tx', b'r10'), validate=False)
        assert ids(cursor) == [b'r1', b'r2', b'r10']
        with pytest.raises(ScanError, match='sorting order'):
            list(SamCursor(sam_stream(b'r2', b'r1'), validate=False))


class TestSamCursorFind:
    @pytest.fixture
    def cursor(self):
        return SamCursor(sam_stream(*(sam_line(f'r{i}', 60, 0) for i in (1, 2, 4, 4, 4, 7))))

    def test_skips_earlier_records(self, cursor):
        assert cursor.find(b'r2').read_id == b'r2'
        assert cursor.peek().read_id == b'r4'

    def test_leaves_later_record_cached(self, cursor):
        assert cursor.find(b'r3') is None
        assert cursor.peek().read_id == b'r4'
        assert cursor.find(b'r3') is None
        assert cursor.find(b'r4') is not None

    def test_never_goes_back(self, cursor):
        assert cursor.find(b'r2') is not None
        assert cursor.find(b'r2') is None
        assert cursor.find(b'r1') is None
        assert cursor.find(b'r3') is None
        assert cursor.peek().read_id == b'r4'

    def test_find_all(self, cursor):
        assert len(list(cursor.find_all(b'r4'))) == 3
        assert list(cursor.find_all(b'r4')) == []
        assert cursor.peek().read_id == b'r7'

    def test_past_the_end(self, cursor):
        assert cursor.find(b'r8') is None
        assert cursor.exhausted
        assert cursor.find(b'r9') is None

    def test_equivalent_names_are_not_matched(self):
        cursor = SamCursor(sam_stream(sam_line('read02', 60, 0)))
        assert cursor.find(b'read2') is None
        assert cursor.peek().read_id == b'read02'


class TestSamSink:
    def test_write(self):
        handle = io.BytesIO()
        sink = SamSink(handle)
        sink.write_header(HEADER.rstrip(b'\n'))
        sink.write(AlignmentRecord.from_line(sam_line('r1', 60, 0)), sam_line('r2', 60, 0))
        sink.close()
        assert handle.getvalue() == HEADER + sam_line('r1', 60, 0) + b'\n' + sam_line('r2', 60, 0) + b'\n'
        assert sink.records_written == 2

    def test_header_must_come_first(self):
        sink = SamSink(io.BytesIO())
        sink.write(sam_line('r1', 60, 0))
        with pytest.raises(ValueError, match='header'):
            sink.write_header(HEADER)

    def test_header_only_once(self):
        sink = SamSink(io.BytesIO())
        sink.write_header(b'')
        with pytest.raises(ValueError, match='header'):
            sink.write_header(HEADER)

    def test_write_after_close(self):
        sink = SamSink(io.BytesIO())
        sink.close()
        with pytest.raises(ValueError, match='closed'):
            sink.write(sam_line('r1', 60, 0))

    def test_records_pass_through_unchanged(self):
        lines = [sam_line('r1', 60, 0, flag=65), sam_line('r1', 75, 3, flag=129), sam_line('r2', 101, 0)]
        handle = io.BytesIO()
        sink = SamSink(handle)
        sink.write(*SamCursor(sam_stream(*lines)))
        assert handle.getvalue().splitlines() == lines


@requires_sh
class TestProcesses:
    def test_cursor_from_process(self, tmp_path):
        path = tmp_path / 'in.sam'
        path.write_bytes(b''.join(sam_line(f'r{i}', 60, 0) + b'\n' for i in range(1, 4)))
        with SamCursor.from_process(ExternalProgram('cat'), [path], 'in.sam') as cursor:
            assert ids(cursor) == [b'r1', b'r2', b'r3']

    def test_decoder_failure(self):
        cursor = SamCursor.from_process(ExternalProgram('sh'), ['-c', 'echo corrupt input >&2; exit 3'], 'bad.bam')
        with pytest.raises(SubprocessError, match='corrupt input'):
            cursor.peek()
        assert cursor.exhausted
        cursor.close()

    def test_decoder_failure_mid_stream(self):
        script = 'printf "%s\\n" "$0"; echo truncated >&2; exit 1'
        cursor = SamCursor.from_process(ExternalProgram('sh'), ['-c', script, sam_line('r1', 60, 0).decode()],
                                        'cont.bam')
        assert cursor.find(b'r1').read_id == b'r1'
        with pytest.raises(SubprocessError, match='truncated'):
            cursor.find(b'r2')
        cursor.close()

    def test_decoder_success_is_joined_at_end(self):
        cursor = SamCursor.from_process(ExternalProgram('sh'), ['-c', 'echo r1'], validate=False)
        assert ids(cursor) == [b'r1']
        assert cursor.peek() is None
        cursor.close()

    def test_early_close_terminates_decoder(self):
        cursor = SamCursor.from_process(ExternalProgram('sh'), ['-c', 'while :; do echo r1; done'], validate=False)
        assert cursor.peek().read_id == b'r1'
        cursor.close()
        cursor.close()

    def test_sink_to_process(self, tmp_path):
        out = tmp_path / 'out.sam'
        with SamSink.from_process(ExternalProgram('sh'), ['-c', 'cat > "$0"', out], str(out)) as sink:
            sink.write_header(HEADER)
            sink.write(sam_line('r1', 60, 0))
        assert out.read_bytes() == HEADER + sam_line('r1', 60, 0) + b'\n'

    def test_encoder_failure(self):
        sink = SamSink.from_process(ExternalProgram('sh'), ['-c', 'cat > /dev/null; echo cannot write >&2; exit 2'])
        sink.write(sam_line('r1', 60, 0))
        sink.close()
        with pytest.raises(SubprocessError, match='cannot write'):
            sink.wait()

    def test_encoder_diagnostics_are_logged(self, caplog):
        with SamSink.from_process(ExternalProgram('sh'), ['-c', 'cat > /dev/null; echo careful']) as sink:
            sink.write(sam_line('r1', 60, 0))
        assert 'careful' in caplog.text

    def test_monitor(self):
        proc = ExternalProgram('sh').start(['-c', 'echo done >&2'])
        monitor = ProcessMonitor(proc, 'sh', proc.stderr)
        monitor.join()
        assert monitor.is_done()
        assert monitor.returncode == 0
        assert monitor.output == b'done\n'
        proc.stdout.close()

    def test_samtools_header(self, tmp_path, fake_samtools):
        path = tmp_path / 'in.sam'
        path.write_bytes(HEADER + sam_line('r1', 60, 0) + b'\n')
        samtools = Samtools(fake_samtools)
        assert samtools.header(path) == HEADER
        with SamCursor.open(path, samtools) as cursor:
            assert ids(cursor) == [b'r1']

    def test_missing_input(self, tmp_path, fake_samtools):
        with pytest.raises(OpenError, match='failed to open'):
            SamCursor.open(tmp_path / 'missing.bam', Samtools(fake_samtools))


class TestExternalProgram:
    def test_missing_program(self):
        with pytest.raises(OpenError, match='Could not find'):
            ExternalProgram('surely-not-an-installed-program')

    def test_missing_binary(self, tmp_path):
        with pytest.raises(OpenError, match='Could not find samtools'):
            Samtools(tmp_path / 'samtools')
