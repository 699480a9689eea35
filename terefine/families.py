"""
Consensus family records and the consensus FASTA file.

Headers follow the RepeatModeler convention ">name#class description".  A
class containing "buffer" (any case) marks a decoy family that competes for
instances but is never edited.  Flanking 'H' characters mark extension pads;
inside the program they are carried as counts on PaddedSequence and only
converted back to markers when the file is written.
"""

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from typing import List, Optional

from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from .errors import ConfigurationError


PAD_CHAR = 'H'
PAD_RE = re.compile(r'^([hH]*)(.*?)([hH]*)$', re.DOTALL)


@dataclass
class PaddedSequence:
    """A consensus core with flanking extension pads."""
    core: str
    left_pad: int = 0
    right_pad: int = 0
    left_finalized: bool = False
    right_finalized: bool = False

    @classmethod
    def from_flat(cls, text: str, left_finalized: bool = False,
                  right_finalized: bool = False) -> 'PaddedSequence':
        """Split a flat sequence with leading/trailing H markers into core and pad counts."""
        m = PAD_RE.match(text)
        return cls(m.group(2), len(m.group(1)), len(m.group(3)), left_finalized, right_finalized)

    def to_flat(self) -> str:
        return PAD_CHAR * self.left_pad + self.core + PAD_CHAR * self.right_pad

    @property
    def flat_length(self) -> int:
        return self.left_pad + len(self.core) + self.right_pad

    @property
    def core_start(self) -> int:
        """0-based offset of the core within the flat sequence."""
        return self.left_pad

    @property
    def core_end(self) -> int:
        """0-based exclusive end of the core within the flat sequence."""
        return self.left_pad + len(self.core)

    def with_core(self, core: str) -> 'PaddedSequence':
        return PaddedSequence(core, self.left_pad, self.right_pad, self.left_finalized, self.right_finalized)


@dataclass
class ConsensusRecord:
    """Per-family bookkeeping for the refinement loop."""
    name: str
    padded: PaddedSequence
    classification: str = ""
    description: str = ""
    buffer: bool = False
    stable: bool = False
    iterations: int = 0
    priority: int = 0
    raw_sequence: str = ""

    @property
    def full_id(self) -> str:
        return f"{self.name}#{self.classification}" if self.classification else self.name

    @property
    def core(self) -> str:
        return self.padded.core

    @property
    def sequence(self) -> str:
        """Sequence as written to file; buffer families keep their input bytes."""
        if self.buffer:
            return self.raw_sequence
        return self.padded.to_flat()

    def matches(self, subject_name: str) -> bool:
        return subject_name in (self.full_id, self.name)


def is_buffer_class(classification: str) -> bool:
    return 'buffer' in classification.lower()


def record_from_seqrecord(record: SeqRecord, priority: int = 0, left_finalized: bool = False,
                          right_finalized: bool = False) -> ConsensusRecord:
    name, _, classification = record.id.partition('#')
    description = record.description
    if description.startswith(record.id):
        description = description[len(record.id):].strip()
    raw = str(record.seq)
    return ConsensusRecord(
        name=name,
        classification=classification,
        description=description,
        padded=PaddedSequence.from_flat(raw.upper(), left_finalized, right_finalized),
        buffer=is_buffer_class(classification),
        priority=priority,
        raw_sequence=raw,
    )


def read_consensus_file(path: str, left_finalized: bool = False,
                        right_finalized: bool = False) -> List[ConsensusRecord]:
    """Load consensus families in file order (file order is processing priority)."""
    if not os.path.isfile(path):
        raise ConfigurationError(f"Consensus file {path} not found")
    records = [record_from_seqrecord(rec, i, left_finalized, right_finalized)
               for i, rec in enumerate(SeqIO.parse(path, 'fasta'))]
    if not records:
        raise ConfigurationError(f"Consensus file {path} contains no sequences")
    names = [r.full_id for r in records]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Consensus file {path} contains duplicate identifiers")
    buffers = sum(1 for r in records if r.buffer)
    logging.debug(f"Loaded {len(records)} consensus families ({buffers} buffer) from {path}")
    return records


def to_seqrecords(records: List[ConsensusRecord]) -> List[SeqRecord]:
    return [SeqRecord(Seq(rec.sequence), id=rec.full_id, description=rec.description)
            for rec in records]


def write_consensus_file(records: List[ConsensusRecord], path: str):
    """Write families to a temporary file in the target directory and move it into place."""
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix='.consensus-', suffix='.fa', dir=directory)
    try:
        with os.fdopen(fd, 'w') as handle:
            SeqIO.write(to_seqrecords(records), handle, 'fasta')
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def next_backup_path(path: str) -> str:
    """First unused numbered backup name (path.1, path.2, ...)."""
    index = 1
    while os.path.exists(f"{path}.{index}"):
        index += 1
    return f"{path}.{index}"


def archive_and_write(records: List[ConsensusRecord], path: str) -> Optional[str]:
    """Back up the current file under the next numbered suffix, then rewrite it.

    The backup is a copy, so the original stays in place until the new file
    has been fully written and renamed over it.

    Returns:
        Path of the backup, or None if there was no file to back up
    """
    backup = None
    if os.path.exists(path):
        backup = next_backup_path(path)
        shutil.copy2(path, backup)
        logging.info(f"Saved previous consensus file as {backup}")
    write_consensus_file(records, path)
    return backup


def add_pads(records: List[ConsensusRecord], count: int) -> int:
    """Give every non-buffer family at least count pads on each side.

    Returns:
        Number of families changed
    """
    changed = 0
    for rec in records:
        if rec.buffer or count <= 0:
            continue
        padded = rec.padded
        if padded.left_pad < count or padded.right_pad < count:
            padded.left_pad = max(padded.left_pad, count)
            padded.right_pad = max(padded.right_pad, count)
            changed += 1
    return changed
