"""
Wrappers around the external similarity search engines.

An engine is configured through setters, run with search(), and returns
its exit status together with the parsed alignments.  The process is always
run to completion and its stdout fully captured before parsing.
"""

import logging
import os
import subprocess
from typing import Dict, List, Optional, Tuple

from .alignment import AlignmentInstance, RMBLAST_FIELDS, parse_crossmatch, parse_rmblast_tabular
from .config import MatrixSpec, RefineConfig
from .errors import ConfigurationError

SCORE_MODES = ('raw', 'complexity_adjusted')


class SearchEngine:
    """Common settings and process handling for search engines."""

    program = None

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self.query: Optional[str] = None
        self.subject: Optional[str] = None
        self.matrix: Optional[str] = None
        self.min_score = 200
        self.gap_init = -25
        self.ins_gap_ext = -5
        self.del_gap_ext = -4
        self.bandwidth = 40
        self.min_match = 7
        self.mask_level = 80
        self.generate_alignments = True
        self.score_mode = 'complexity_adjusted'
        self.cores = 1
        self.last_command: List[str] = []
        self.last_stderr: Optional[str] = None

    def set_query(self, path: str):
        self.query = path

    def set_subject(self, path: str):
        self.subject = path

    def set_matrix(self, path: str):
        self.matrix = path

    def set_min_score(self, value: int):
        self.min_score = int(value)

    def set_gap_init(self, value: int):
        self.gap_init = int(value)

    def set_ins_gap_ext(self, value: int):
        self.ins_gap_ext = int(value)

    def set_del_gap_ext(self, value: int):
        self.del_gap_ext = int(value)

    def set_bandwidth(self, value: int):
        self.bandwidth = int(value)

    def set_min_match(self, value: int):
        self.min_match = int(value)

    def set_mask_level(self, value: int):
        self.mask_level = int(value)

    def set_generate_alignments(self, value: bool):
        self.generate_alignments = bool(value)

    def set_score_mode(self, mode: str):
        if mode not in SCORE_MODES:
            raise ConfigurationError(f"Unknown score mode: {mode}")
        self.score_mode = mode

    def set_cores(self, value: int):
        self.cores = max(1, int(value))

    def executable(self, program: Optional[str] = None) -> str:
        program = program or self.program
        return os.path.join(self.path, program) if self.path else program

    def get_parameters(self) -> Dict:
        return {
            "program": self.program,
            "query": self.query,
            "subject": self.subject,
            "matrix": self.matrix,
            "min_score": self.min_score,
            "gap_init": self.gap_init,
            "ins_gap_ext": self.ins_gap_ext,
            "del_gap_ext": self.del_gap_ext,
            "bandwidth": self.bandwidth,
            "min_match": self.min_match,
            "mask_level": self.mask_level,
            "score_mode": self.score_mode,
            "cores": self.cores,
        }

    def command(self) -> List[str]:
        raise NotImplementedError

    def prepare(self) -> int:
        """Hook run before every search; returns a nonzero status on failure."""
        return 0

    def parse_output(self, text: str) -> List[AlignmentInstance]:
        raise NotImplementedError

    def _run(self, cmd: List[str], env: Optional[Dict[str, str]] = None) -> Tuple[int, str]:
        self.last_command = cmd
        self.last_stderr = None
        logging.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, env=env)
        except FileNotFoundError:
            logging.error(f"{cmd[0]} not found. Install it or set the engine path.")
            self.last_stderr = f"{cmd[0]}: command not found"
            return 127, ""
        self.last_stderr = result.stderr
        if result.returncode != 0:
            logging.error(f"{cmd[0]} failed with return code {result.returncode}")
            logging.error(f"Command: {' '.join(cmd)}")
            logging.error(f"Stderr: {result.stderr}")
        elif result.stderr:
            logging.debug(f"{cmd[0]} stderr: {result.stderr}")
        return result.returncode, result.stdout

    def search(self) -> Tuple[int, List[AlignmentInstance]]:
        """Run the search and parse its output.

        Returns:
            Tuple of (exit status, alignments); alignments are empty when the
            status is nonzero
        """
        if not self.query or not self.subject:
            raise ConfigurationError("Search engine requires both a query and a subject")
        status = self.prepare()
        if status != 0:
            return status, []
        status, stdout = self._run(self.command(), self._environment())
        if status != 0:
            return status, []
        return 0, self.parse_output(stdout)

    def _environment(self) -> Optional[Dict[str, str]]:
        return None


class CrossmatchSearchEngine(SearchEngine):
    """Phil Green's cross_match."""

    program = 'cross_match'

    def command(self) -> List[str]:
        cmd = [self.executable(), self.query, self.subject]
        if self.matrix:
            cmd += ['-matrix', self.matrix]
        cmd += [
            '-gap_init', str(self.gap_init),
            '-ins_gap_ext', str(self.ins_gap_ext),
            '-del_gap_ext', str(self.del_gap_ext),
            '-minmatch', str(self.min_match),
            '-minscore', str(self.min_score),
            '-bandwidth', str(self.bandwidth),
            '-masklevel', str(self.mask_level),
        ]
        if self.generate_alignments:
            cmd.append('-alignments')
        if self.score_mode == 'raw':
            cmd.append('-raw')
        return cmd

    def parse_output(self, text: str) -> List[AlignmentInstance]:
        return parse_crossmatch(text.splitlines())


class RmblastSearchEngine(SearchEngine):
    """NCBI rmblastn with a makeblastdb-built subject database."""

    program = 'rmblastn'

    def prepare(self) -> int:
        # The subject changes between iterations, so the database is always rebuilt
        cmd = [self.executable('makeblastdb'), '-out', self.subject, '-parse_seqids',
               '-dbtype', 'nucl', '-in', self.subject]
        status, _ = self._run(cmd)
        return status

    def command(self) -> List[str]:
        cmd = [
            self.executable(),
            '-db', self.subject,
            '-query', self.query,
            '-outfmt', '6 ' + ' '.join(RMBLAST_FIELDS),
            '-num_threads', str(self.cores),
            '-gapopen', str(-self.gap_init),
            '-gapextend', str(-self.ins_gap_ext),
            '-min_raw_gapped_score', str(self.min_score),
            '-word_size', str(self.min_match),
            '-mask_level', str(self.mask_level),
            '-dust', 'no',
        ]
        if self.matrix:
            cmd += ['-matrix', os.path.basename(self.matrix)]
        if self.score_mode == 'complexity_adjusted':
            cmd.append('-complexity_adjust')
        return cmd

    def _environment(self) -> Optional[Dict[str, str]]:
        if not self.matrix:
            return None
        env = dict(os.environ)
        env['BLASTMAT'] = os.path.dirname(os.path.abspath(self.matrix))
        return env

    def parse_output(self, text: str) -> List[AlignmentInstance]:
        return list(parse_rmblast_tabular(text.splitlines()))


ENGINE_CLASSES = {
    'crossmatch': CrossmatchSearchEngine,
    'rmblast': RmblastSearchEngine,
}


def configure_engine(config: RefineConfig, matrix_spec: Optional[MatrixSpec] = None) -> SearchEngine:
    """Build a search engine from the run configuration.

    Args:
        config: Refinement settings (engine name, path, thresholds, cores)
        matrix_spec: Resolved matrix; when None the engine's own defaults apply

    Returns:
        Configured SearchEngine with alignments enabled
    """
    try:
        engine = ENGINE_CLASSES[config.engine](config.engine_dir)
    except KeyError:
        raise ConfigurationError(f"Unknown search engine: {config.engine}")
    if matrix_spec is not None:
        engine.set_matrix(matrix_spec.path)
        engine.set_gap_init(matrix_spec.gap_init)
        engine.set_ins_gap_ext(matrix_spec.ins_gap_ext)
        engine.set_del_gap_ext(matrix_spec.del_gap_ext)
    engine.set_min_score(config.min_score)
    engine.set_min_match(config.min_match)
    engine.set_bandwidth(config.bandwidth)
    engine.set_mask_level(config.mask_level)
    engine.set_cores(config.cores)
    engine.set_generate_alignments(True)
    engine.set_score_mode('complexity_adjusted')
    return engine
