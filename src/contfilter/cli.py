"""
Command line entry points.

``contfilter`` removes reads from a name-sorted sample BAM that align at least as well to any of the given
name-sorted contaminant BAMs. ``contfilter-sortcheck`` checks that a BAM is sorted the way contfilter expects.
"""
from argparse import ArgumentParser, Namespace, ArgumentDefaultsHelpFormatter
from contextlib import ExitStack
from pathlib import Path
from typing import Sequence
import logging

from contfilter import ContfilterError, __version__
from contfilter.engines.filter import ContaminationFilter, FilterConfig, FilterStats
from contfilter.io.sam import SamCursor, SamSink
from contfilter.utils.external import Samtools


# Constants ------------------------------------------------------------------------------------------------------------
_LOGGER = logging.getLogger('contfilter')
_FORMAT = '%(asctime)s %(name)s %(levelname)s - %(message)s'


# Functions ------------------------------------------------------------------------------------------------------------
def setup_logging(debug: bool = False, log_file: Path = None):
    """
    Logs to stderr, and everything including the per-read decisions to ``log_file`` if given.
    """
    for handler in list(_LOGGER.handlers):
        _LOGGER.removeHandler(handler)
        handler.close()
    _LOGGER.setLevel(logging.DEBUG if debug or log_file else logging.INFO)
    formatter = logging.Formatter(_FORMAT)
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if debug else logging.INFO)
    ch.setFormatter(formatter)
    ch.addFilter(lambda record: record.name != 'contfilter.reads')
    _LOGGER.addHandler(ch)
    if log_file:
        fh = logging.FileHandler(log_file, mode='w')
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(formatter)
        _LOGGER.addHandler(fh)


def parse_args(argv: Sequence[str] = None) -> tuple[Namespace, FilterConfig]:
    parser = ArgumentParser(
        prog='contfilter', formatter_class=ArgumentDefaultsHelpFormatter,
        description='Remove reads from a sample that align at least as well to a contaminant reference. '
                    'All inputs must be sorted by read name (samtools sort -n).',
        epilog='usage: contfilter -s sample.bam -o filtered.bam cont1.bam cont2.bam\n'
               '   or: samtools view -h sample.bam | contfilter -o filtered.bam cont1.bam cont2.bam'
    )
    parser.add_argument('contaminants', nargs='+', type=Path, metavar='CONTAMINATION',
                        help='BAM files of the sample reads mapped to contaminant references')
    parser.add_argument('-s', '--sample', type=Path,
                        help='BAM file of the sample to filter; SAM text is read from stdin if not given')
    parser.add_argument('-o', '--output', type=Path, required=True, help='BAM file to write kept reads to')
    parser.add_argument('-m', '--min-length', type=int, default=FilterConfig.min_length,
                        help='minimum alignment length')
    parser.add_argument('-d', '--max-edit-distance', type=int, default=FilterConfig.max_edit_distance,
                        help='maximum edit distance of sample alignments')
    parser.add_argument('--penalty', type=float, default=FilterConfig.penalty, help='score penalty per edit')
    parser.add_argument('--margin', type=float, default=FilterConfig.margin,
                        help='reject reads scoring at most this much better in the sample than in a contaminant')
    parser.add_argument('-n', '--limit', type=int, help='stop after this many sample reads')
    parser.add_argument('--exclude-ercc', action='store_true', help='discard reads aligned to ERCC spike-ins')
    parser.add_argument('--header', type=Path, help='take the output header from this SAM/BAM file')
    parser.add_argument('--samtools', type=Path, help='samtools executable to use instead of the one in PATH')
    parser.add_argument('--log', type=Path, help='write a log including every read decision to this file')
    parser.add_argument('--debug', action='store_true', help='log debugging messages to stderr')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    args = parser.parse_args(argv)
    try: config = FilterConfig.from_args(args)
    except ValueError as e: parser.error(str(e))
    return args, config


def run(args: Namespace, config: FilterConfig) -> FilterStats:
    """
    Opens every stream, filters the sample and joins every external process before returning.

    Raises:
        ContfilterError: On any unreadable input, malformed or unsorted stream, or failed samtools process.
    """
    samtools = Samtools(args.samtools)
    with ExitStack() as stack:
        if args.sample: sample = stack.enter_context(SamCursor.open(args.sample, samtools))
        else: sample = stack.enter_context(SamCursor.from_stdin())
        contaminants = [stack.enter_context(SamCursor.open(path, samtools)) for path in args.contaminants]

        if args.header: header = samtools.header(args.header)
        elif args.sample: header = samtools.header(args.sample)
        else: header = sample.header
        if not header: _LOGGER.warning('No header for %s; samtools may refuse the output', args.output)

        sink = stack.enter_context(SamSink.open(args.output, samtools))
        sink.write_header(header)
        _LOGGER.info('Filtering %s against %d contaminant file(s)', sample.name, len(contaminants))
        return ContaminationFilter(sample, contaminants, sink, config).run()


def main(argv: Sequence[str] = None) -> int:
    args, config = parse_args(argv)
    setup_logging(args.debug, args.log)
    try: stats = run(args, config)
    except ContfilterError as e:
        _LOGGER.error('%s', e)
        return 1
    except KeyboardInterrupt:
        _LOGGER.error('Interrupted')
        return 130
    for line in stats.report([str(path) for path in args.contaminants]): _LOGGER.info(line)
    return 0


def sortcheck_main(argv: Sequence[str] = None) -> int:
    parser = ArgumentParser(prog='contfilter-sortcheck',
                            description='Check that a BAM file (or SAM text on stdin) is sorted by read name in the '
                                        'natural order contfilter expects.')
    parser.add_argument('bam', nargs='?', type=Path, help='BAM file to check; SAM text is read from stdin if not given')
    parser.add_argument('--samtools', type=Path, help='samtools executable to use instead of the one in PATH')
    parser.add_argument('--debug', action='store_true', help='log debugging messages to stderr')
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    try:
        if args.bam: cursor = SamCursor.open(args.bam, Samtools(args.samtools), validate=False)
        else: cursor = SamCursor.from_stdin(validate=False)
        with cursor:
            for _ in cursor: pass
    except ContfilterError as e:
        _LOGGER.error('%s', e)
        return 1
    print('OK', cursor.line_number)
    return 0
