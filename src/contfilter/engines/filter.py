"""
Module for filtering sample reads that align better to contaminant references.

The sample and every contaminant stream must be sorted by read name in natural order. The engine walks the sample
one read (and its mate, if paired) at a time, and seeks each contaminant stream forward to the same read, so every
stream is read exactly once regardless of how many reads each contains.
"""
from dataclasses import dataclass
from typing import Optional, Sequence, Iterable, Union
import logging

import numpy as np

from contfilter.containers.record import AlignmentRecord, MalformedRecordError, ScoredAlignment
from contfilter.io.sam import SamCursor, SamSink
from contfilter.utils import Config


# Constants ------------------------------------------------------------------------------------------------------------
_LOGGER = logging.getLogger(__name__)
_READ_LOGGER = logging.getLogger('contfilter.reads')


# Classes --------------------------------------------------------------------------------------------------------------
@dataclass(frozen=True)
class FilterConfig(Config):
    """
    Thresholds of the contamination filter.

    Attributes:
        min_length: Alignments shorter than this are ignored, both in the sample and in contaminants.
        max_edit_distance: Sample alignments with more edits than this are discarded.
        penalty: Score lost per edit; the score of an alignment is ``length - edit_distance * penalty``.
        margin: A read is rejected if its best sample score is at most a contaminant score plus this margin.
        limit: Stop after this many sample reads.
        exclude_ercc: Discard reads with a mate aligned to a spike-in reference.
        ercc_marker: Substring of the reference names of spike-ins.
    """
    min_length: int = 60
    max_edit_distance: int = 5
    penalty: float = 2.0
    margin: float = 1.0
    limit: Optional[int] = None
    exclude_ercc: bool = False
    ercc_marker: bytes = b'ERCC'

    def __post_init__(self):
        if self.min_length < 0: raise ValueError(f'min_length must be >= 0, got {self.min_length}')
        if self.max_edit_distance < 0: raise ValueError(f'max_edit_distance must be >= 0, got {self.max_edit_distance}')
        if self.penalty < 0: raise ValueError(f'penalty must be >= 0, got {self.penalty}')
        if self.limit is not None and self.limit <= 0: raise ValueError(f'limit must be positive, got {self.limit}')


class FilterStats:
    """
    Counters accumulated over a whole run.

    Attributes:
        total_reads: Sample reads seen (a pair of mates counts once).
        total_mates: Sample records seen.
        ercc_filtered: Reads discarded for aligning to a spike-in.
        too_short: Reads with no mate long enough.
        too_diverged: Reads with no long enough mate within the edit distance limit.
        considered: Reads that passed the preliminary filters.
        kept: Reads written to the output.
        mates_kept: Records written to the output.
        found (np.ndarray): Per contaminant, considered reads with at least one alignment in it.
        rejected (np.ndarray): Per contaminant, considered reads it rejected.
    """
    __slots__ = ('total_reads', 'total_mates', 'ercc_filtered', 'too_short', 'too_diverged', 'considered', 'kept',
                 'mates_kept', 'found', 'rejected')

    def __init__(self, n_sources: int):
        self.total_reads = 0
        self.total_mates = 0
        self.ercc_filtered = 0
        self.too_short = 0
        self.too_diverged = 0
        self.considered = 0
        self.kept = 0
        self.mates_kept = 0
        self.found = np.zeros(n_sources, dtype=np.int64)
        self.rejected = np.zeros(n_sources, dtype=np.int64)

    def __repr__(self):
        return (f'FilterStats(total_reads={self.total_reads}, considered={self.considered}, kept={self.kept}, '
                f'found={self.found.tolist()}, rejected={self.rejected.tolist()})')

    @property
    def n_sources(self) -> int: return len(self.found)

    def report(self, sources: Sequence[str] = None) -> list[str]:
        """
        Formats the counters as lines of a summary.

        Preliminary filter counts are given as a percentage of all reads, contaminant counts as a percentage of
        considered reads.

        Args:
            sources: Names of the contaminant streams, in the order they were given to the filter.
        """
        if sources is None: sources = [f'source {i + 1}' for i in range(self.n_sources)]
        if len(sources) != self.n_sources: raise ValueError(f'expected {self.n_sources} source names, got {len(sources)}')
        filtered = np.array([self.ercc_filtered, self.too_short, self.too_diverged, self.considered])
        filtered_pct = _percent(filtered, self.total_reads)
        found_pct, rejected_pct = _percent(self.found, self.considered), _percent(self.rejected, self.considered)
        lines = [
            f'Total reads: {self.total_reads:,} ({self.total_mates:,} mates)',
            f'ERCC filtered: {self.ercc_filtered:,} ({filtered_pct[0]:.2f}%)',
            f'Too short: {self.too_short:,} ({filtered_pct[1]:.2f}%)',
            f'Too diverged: {self.too_diverged:,} ({filtered_pct[2]:.2f}%)',
            f'Considered: {self.considered:,} ({filtered_pct[3]:.2f}%)',
            f'Kept: {self.kept:,} ({float(_percent(self.kept, self.considered)):.2f}% of considered, '
            f'{self.mates_kept:,} mates)',
        ]
        for name, n_found, p_found, n_rejected, p_rejected in zip(
                sources, self.found.tolist(), found_pct.tolist(), self.rejected.tolist(), rejected_pct.tolist()):
            lines.append(f'{name}: found {n_found:,} ({p_found:.2f}%), rejected {n_rejected:,} ({p_rejected:.2f}%)')
        return lines


class ContaminationFilter:
    """
    Compares each sample read with its alignments in every contaminant stream and keeps the read only if no
    contaminant explains it as well as the sample reference (within ``margin``).

    Each turn takes one read from the sample (two records if paired), drops mates that are too short or too
    diverged, scores the best surviving mate, and checks it against every contaminant alignment of that read.
    Surviving mates of reads that are not rejected are written to the sink unchanged.

    Args:
        sample: Cursor over the sample stream.
        contaminants: Cursors over the contaminant streams.
        sink: Destination of kept records; the header should already have been written.
        config: Filter thresholds.

    Examples:
        >>> with SamCursor.open('sample.bam') as sample, SamCursor.open('phix.bam') as phix:
        ...     with SamSink.open('filtered.bam') as sink:
        ...         sink.write_header(sample_header)
        ...         stats = ContaminationFilter(sample, [phix], sink, FilterConfig(min_length=50)).run()
    """
    def __init__(self, sample: SamCursor, contaminants: Sequence[SamCursor], sink: SamSink,
                 config: FilterConfig = None):
        if not contaminants: raise ValueError('at least one contaminant stream is required')
        self._sample = sample
        self._contaminants = list(contaminants)
        self._sink = sink
        self._config = config or FilterConfig()
        self.stats = FilterStats(len(self._contaminants))

    def __repr__(self): return f'ContaminationFilter({self._sample.name}, contaminants={len(self._contaminants)})'

    @property
    def config(self) -> FilterConfig: return self._config

    def run(self) -> FilterStats:
        """
        Filters until the sample is exhausted or the read limit is reached.

        Raises:
            ScanError: If any stream is malformed or out of order.
            MalformedRecordError: If a record's fields cannot be extracted.
        """
        limit = self._config.limit
        while limit is None or self.stats.total_reads < limit:
            if not self.step(): break
        else:
            _LOGGER.info('Stopped after the limit of %d reads', limit)
        return self.stats

    def step(self) -> bool:
        """Processes one sample read; returns False once the sample is exhausted."""
        if (mate1 := self._sample.peek()) is None: return False
        self._sample.advance()
        read_id = mate1.read_id
        mates = [mate1]
        if (mate2 := self._sample.find(read_id)) is not None: mates.append(mate2)
        self.stats.total_reads += 1
        self.stats.total_mates += len(mates)

        cfg, stats = self._config, self.stats
        scored = [(mate, self._score(mate)) for mate in mates]

        if cfg.exclude_ercc and any(cfg.ercc_marker in mate.reference_name for mate in mates):
            stats.ercc_filtered += 1
            self._log(read_id, 'ercc')
            return True
        # A failing mate1 is replaced by a passing mate2; the pair is dropped only if neither passes
        if not (scored := [i for i in scored if i[1].length >= cfg.min_length]):
            stats.too_short += 1
            self._log(read_id, 'too_short')
            return True
        if not (scored := [i for i in scored if i[1].edit_distance <= cfg.max_edit_distance]):
            stats.too_diverged += 1
            self._log(read_id, 'too_diverged')
            return True
        stats.considered += 1

        best = max((i[1] for i in scored), key=lambda s: s.score)
        found, rejected = self._compare(read_id, best)
        stats.found += found
        stats.rejected += rejected
        if rejected.any():
            self._log(read_id, 'rejected', best, np.flatnonzero(rejected))
            return True

        self._sink.write(*(mate for mate, _ in scored))
        stats.kept += 1
        stats.mates_kept += len(scored)
        self._log(read_id, 'kept', best)
        return True

    def _compare(self, read_id: bytes, best: ScoredAlignment) -> tuple[np.ndarray, np.ndarray]:
        """
        Consumes every alignment of ``read_id`` in every contaminant stream.

        Returns:
            Boolean arrays marking the contaminants the read was found in and those that rejected it.
        """
        cfg = self._config
        found = np.zeros(len(self._contaminants), dtype=bool)
        rejected = np.zeros(len(self._contaminants), dtype=bool)
        for i, cursor in enumerate(self._contaminants):
            for hit in cursor.find_all(read_id):
                found[i] = True
                if (hit_score := self._score(hit, cursor)).length < cfg.min_length: continue
                if best.score <= hit_score.score + cfg.margin: rejected[i] = True
        return found, rejected

    def _score(self, record: AlignmentRecord, cursor: SamCursor = None) -> ScoredAlignment:
        try: return record.scored(self._config.penalty)
        except MalformedRecordError as e:
            source = (cursor or self._sample).name
            raise MalformedRecordError(f"{source}: read {record.read_id.decode('ascii', 'replace')!r}: {e}") from e

    def _log(self, read_id: bytes, decision: str, best: ScoredAlignment = None, sources: Iterable[int] = ()):
        if not _READ_LOGGER.isEnabledFor(logging.DEBUG): return
        message = f"{read_id.decode('ascii', 'replace')}\t{decision}"
        if best is not None: message += f'\tlength={best.length}\tedits={best.edit_distance}\tscore={best.score:g}'
        if sources := [self._contaminants[i].name for i in sources]: message += f"\tsources={','.join(sources)}"
        _READ_LOGGER.debug(message)


# Functions ------------------------------------------------------------------------------------------------------------
def _percent(numerator: Union[int, np.ndarray], denominator: int) -> Union[float, np.ndarray]:
    """Percentage of ``denominator``, 0 where the denominator is 0."""
    numerator = np.asarray(numerator, dtype=np.float64)
    if denominator == 0: return np.zeros_like(numerator)
    return np.divide(numerator, denominator) * 100
