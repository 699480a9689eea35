"""Run configuration for consensus refinement and indel resolution."""

import json
import logging
import os
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import List, NamedTuple, Optional

from .errors import ConfigurationError


MATRIX_DIVERGENCES = (14, 18, 20, 25)
MATRIX_GC_LEVELS = (37, 39, 41, 43, 45, 49, 51, 53)

# (gap_init, ins_gap_ext, del_gap_ext) per matrix divergence level
GAP_PARAMETERS = {
    25: (-25, -5, -4),
    20: (-28, -6, -5),
    14: (-33, -7, -6),
    18: (-30, -6, -5),
}

ENGINES = ('crossmatch', 'rmblast')
REFINE_MODES = ('single', 'refine', 'interactive')
AGGREGATION_METHODS = ('tile', 'cluster')


class MatrixSpec(NamedTuple):
    """A resolved divergence/GC matrix choice and its gap parameters."""
    path: str
    divergence: int
    gc: int
    gap_init: int
    ins_gap_ext: int
    del_gap_ext: int


def parse_matrix_spec(spec: str) -> tuple:
    """Split a matrix spec ('25' or '25p41g') into (divergence, gc)."""
    spec = str(spec).strip()
    if re.fullmatch(r'\d{2}', spec):
        return int(spec), 41
    m = re.fullmatch(r'(\d{2})p(\d{2})g?', spec)
    if not m:
        raise ConfigurationError(
            f"Cannot parse matrix parameter: {spec}  Expected either a single integer or '##p##g' format")
    return int(m.group(1)), int(m.group(2))


def resolve_matrix_spec(spec: str, matrix_dir: Optional[str], engine: str = 'crossmatch',
                        check_exists: bool = True) -> MatrixSpec:
    """Resolve a matrix spec to an H-pad matrix file and gap parameters.

    Args:
        spec: '25' or '25p41g' style divergence/GC selection
        matrix_dir: Root matrix directory holding crossmatch/ and ncbi/nt/
        engine: 'crossmatch' or 'rmblast', selecting the matrix subdirectory
        check_exists: Require the resolved file to exist

    Returns:
        MatrixSpec with path and gap parameters
    """
    divergence, gc = parse_matrix_spec(spec)
    if divergence not in MATRIX_DIVERGENCES:
        raise ConfigurationError(
            f"Matrix divergence must be one of {', '.join(map(str, MATRIX_DIVERGENCES))} (got {divergence})")
    if gc not in MATRIX_GC_LEVELS:
        raise ConfigurationError(
            f"Matrix GC level must be one of {', '.join(map(str, MATRIX_GC_LEVELS))} (got {gc})")
    if matrix_dir is None:
        raise ConfigurationError("A matrix directory is required to resolve matrix specs")

    subdir = os.path.join('ncbi', 'nt') if engine == 'rmblast' else 'crossmatch'
    path = os.path.join(matrix_dir, subdir, f"{divergence}p{gc}g-Hpad.matrix")
    if check_exists and not (os.path.isfile(path) and os.path.getsize(path) > 0):
        raise ConfigurationError(f"Matrix parameter resolved to {path}, which doesn't exist")

    gap_init, ins_gap_ext, del_gap_ext = GAP_PARAMETERS[divergence]
    return MatrixSpec(path, divergence, gc, gap_init, ins_gap_ext, del_gap_ext)


def parse_window_sizes(text: str) -> List[int]:
    """Parse a comma-separated list of window sizes."""
    try:
        sizes = [int(part) for part in re.split(r'\s*,\s*', text.strip()) if part]
    except ValueError:
        raise ConfigurationError(f"Window sizes must be integers: {text}")
    if not sizes or any(size < 1 for size in sizes):
        raise ConfigurationError(f"Window sizes must be positive: {text}")
    return sizes


@dataclass
class IndelConfig:
    """Configuration for indel resolution.

    Attributes:
        discrete_windows: Explicit list of sliding window sizes
        window_min: Smallest window of a contiguous range (with window_max)
        window_max: Largest window of a contiguous range
        ruzzo_tompa_threshold: Use low scoring column ranges instead of windows
        aggregation: 'tile' or 'cluster'
        min_gap: Minimum separation between tiled ranges (negative allows overlap)
        gap_allowed_dist: Distance within which clustering merges ranges
        min_copy: Minimum copies supporting an alternative length
        min_ratio: Minimum alternative-to-current length copy ratio
        include_reference: Count the reference row in block evaluation
    """
    discrete_windows: Optional[List[int]] = None
    window_min: Optional[int] = None
    window_max: Optional[int] = None
    ruzzo_tompa_threshold: Optional[float] = None
    aggregation: str = 'tile'
    min_gap: int = 0
    gap_allowed_dist: int = 0
    min_copy: int = 4
    min_ratio: float = 2.0
    include_reference: bool = False

    @property
    def method(self) -> str:
        return 'ruzzo_tompa' if self.ruzzo_tompa_threshold is not None else 'blocker'

    @property
    def window_sizes(self) -> List[int]:
        if self.discrete_windows:
            return list(self.discrete_windows)
        if self.window_min is not None and self.window_max is not None:
            return list(range(self.window_min, self.window_max + 1))
        return []

    @property
    def method_label(self) -> str:
        if self.discrete_windows:
            return "Discrete window sizes " + ",".join(map(str, self.discrete_windows))
        if self.method == 'blocker':
            return f"Continuous window sizes {self.window_min} to {self.window_max}"
        return f"Ruzzo Tompa Threshold : {self.ruzzo_tompa_threshold}"

    def validate(self):
        """Check option combinations.

        Raises:
            ConfigurationError: On conflicting or incomplete window options
        """
        has_range = self.window_min is not None or self.window_max is not None
        if self.discrete_windows and has_range:
            raise ConfigurationError("Options discrete_windows and window_min/window_max are mutually exclusive")
        if has_range and (self.window_min is None or self.window_max is None):
            raise ConfigurationError("Options window_min and window_max must be used together")
        if has_range and not (1 <= self.window_min <= self.window_max):
            raise ConfigurationError(f"Invalid window range {self.window_min}..{self.window_max}")
        uses_windows = bool(self.discrete_windows) or has_range
        if uses_windows and self.ruzzo_tompa_threshold is not None:
            raise ConfigurationError("Window options and ruzzo_tompa_threshold are mutually exclusive")
        if not uses_windows and self.ruzzo_tompa_threshold is None:
            raise ConfigurationError(
                "Must supply either discrete_windows, both window_min and window_max, or ruzzo_tompa_threshold")
        if self.aggregation not in AGGREGATION_METHODS:
            raise ConfigurationError(f"Unknown aggregation method: {self.aggregation}")
        if self.min_copy < 1:
            raise ConfigurationError("min_copy must be at least 1")

    @classmethod
    def from_args(cls, args) -> 'IndelConfig':
        """Create config from command-line arguments."""
        windows = getattr(args, 'discrete_windows', None)
        return cls(
            discrete_windows=parse_window_sizes(windows) if windows else None,
            window_min=getattr(args, 'window_min', None),
            window_max=getattr(args, 'window_max', None),
            ruzzo_tompa_threshold=getattr(args, 'ruzzo_tompa_threshold', None),
            aggregation=getattr(args, 'aggregation_method', 'tile'),
            min_gap=getattr(args, 'min_gap', 0),
            gap_allowed_dist=getattr(args, 'gap_allowed_dist', 0),
            min_copy=getattr(args, 'min_copy', 4),
            min_ratio=getattr(args, 'min_ratio', 2.0),
        )


@dataclass
class RefineConfig:
    """Configuration for the consensus refinement loop.

    Attributes:
        consensus_file: FASTA of consensus sequences, rewritten in place
        elements_file: FASTA of repeat instances to align
        output_dir: Directory for alignment output, metadata and summaries
        engine: 'crossmatch' or 'rmblast'
        matrix: Divergence/GC matrix spec ('25p41g')
        max_divergence: Alignments above this percent divergence are discarded
        prune_cutoff: Trim consensus edges with coverage at or below this depth
        mode: 'single' (one pass), 'refine' (until stable) or 'interactive'
        max_iterations: Iteration cap for refine mode
        max_seconds: Optional wall-clock budget checked between iterations
        finished_ext: '5', '3' or 'b' marks extension on that side as done
        hpad: Number of H pad characters added to each end on load
    """
    consensus_file: str = ""
    elements_file: str = ""
    output_dir: str = "."
    engine: str = 'crossmatch'
    engine_dir: Optional[str] = None
    matrix: str = '25p41g'
    matrix_dir: Optional[str] = None
    max_divergence: float = 60.0
    min_score: int = 200
    min_match: int = 7
    bandwidth: int = 40
    mask_level: int = 80
    cores: int = 1
    prune_cutoff: Optional[int] = None
    min_pruned_length: int = 25
    mode: str = 'single'
    max_iterations: int = 5
    max_seconds: Optional[float] = None
    finished_ext: Optional[str] = None
    hpad: int = 0
    overlap_filter: bool = False
    only_best_alignment: bool = False
    competitive: bool = True
    max_masked_run: int = 20
    include_reference: bool = False
    cpg_adjust: bool = False
    indels: Optional[IndelConfig] = None

    @property
    def left_finalized(self) -> bool:
        return self.finished_ext is not None and self.finished_ext.lower() in ('5', 'b')

    @property
    def right_finalized(self) -> bool:
        return self.finished_ext is not None and self.finished_ext.lower() in ('3', 'b')

    def validate(self):
        if self.engine not in ENGINES:
            raise ConfigurationError(f"Unknown search engine: {self.engine}")
        if self.mode not in REFINE_MODES:
            raise ConfigurationError(f"Unknown mode: {self.mode}")
        if self.finished_ext is not None and self.finished_ext.lower() not in ('5', '3', 'b'):
            raise ConfigurationError(f"-f {self.finished_ext} not recognized")
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be at least 1")
        for label, path in (("Consensus", self.consensus_file), ("Elements", self.elements_file)):
            if not path or not os.path.isfile(path) or os.path.getsize(path) == 0:
                raise ConfigurationError(f"{label} file {path} missing or empty")
        if self.indels is not None:
            self.indels.validate()

    @classmethod
    def from_args(cls, args) -> 'RefineConfig':
        """Create config from command-line arguments."""
        if args.interactive:
            mode = 'interactive'
        elif args.refine:
            mode = 'refine'
        else:
            mode = 'single'
        indels = IndelConfig.from_args(args) if getattr(args, 'resolve_indels', False) else None
        return cls(
            consensus_file=args.consensus,
            elements_file=args.elements,
            output_dir=args.output_dir,
            engine=args.engine,
            engine_dir=args.engine_dir,
            matrix=args.matrix,
            matrix_dir=args.matrix_dir,
            max_divergence=args.divergence_max,
            min_score=args.min_score,
            min_match=args.min_match,
            bandwidth=args.bandwidth,
            cores=args.threads,
            prune_cutoff=args.prune_cutoff,
            mode=mode,
            max_iterations=args.max_iterations,
            max_seconds=args.max_seconds,
            finished_ext=args.finished_ext,
            hpad=args.hpad,
            overlap_filter=args.overlap_filter,
            only_best_alignment=args.only_best_alignment,
            competitive=not args.no_competitive,
            include_reference=args.include_reference,
            cpg_adjust=args.cpg_adjust,
            indels=indels,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def write_metadata(config: RefineConfig, version: str, filename: str = 'refine_metadata.json') -> str:
    """Write run parameters to a JSON file in the output directory."""
    os.makedirs(config.output_dir, exist_ok=True)
    metadata = {
        "version": version,
        "timestamp": datetime.now().isoformat(),
        "parameters": config.to_dict(),
    }
    path = os.path.join(config.output_dir, filename)
    with open(path, 'w') as f:
        json.dump(metadata, f, indent=2)
    logging.debug(f"Wrote run metadata to {path}")
    return path
