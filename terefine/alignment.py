"""
Pairwise alignment records and the cross_match text format.

An AlignmentInstance is one alignment of a genomic copy (query) to a
consensus (subject).  Coordinates are 1-based and inclusive; the subject
start is always <= subject end.  For reverse-strand alignments the gapped
strings follow the cross_match convention: the query is shown forward and
the subject is reverse complemented.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Iterable, Iterator, List, Optional, TextIO, Tuple

from Bio.Seq import reverse_complement

from .errors import AlignmentFormatError


TRANSITIONS = {('C', 'T'), ('T', 'C'), ('A', 'G'), ('G', 'A')}
CANONICAL_BASES = set('ACGT')
LINE_WIDTH = 50

HEADER_RE = re.compile(
    r'^\s*(?P<score>\d+)\s+'
    r'(?P<sub>-?\d+(?:\.\d+)?)\s+(?P<del>-?\d+(?:\.\d+)?)\s+(?P<ins>-?\d+(?:\.\d+)?)\s+'
    r'(?P<qname>\S+)\s+(?P<qstart>\d+)\s+(?P<qend>\d+)\s+\((?P<qrem>\d+)\)\s+'
    r'(?:(?P<strand>[C+])\s+)?(?P<sname>\S+)\s+'
    r'(?P<s1>\(?\d+\)?)\s+(?P<s2>\d+)\s+(?P<s3>\(?\d+\)?)'
)
BODY_RE = re.compile(r'^(?:C )?\s*(?P<name>\S+)\s+(?P<start>\d+)\s+(?P<seq>[A-Za-z\-*.]+)\s+(?P<end>\d+)\s*$')


@dataclass
class AlignmentInstance:
    score: int
    pct_div: float
    pct_del: float
    pct_ins: float
    query_name: str
    query_start: int
    query_end: int
    query_remaining: int
    orientation: str
    subject_name: str
    subject_start: int
    subject_end: int
    subject_remaining: int
    aligned_query: str = ""
    aligned_subject: str = ""

    @property
    def is_reverse(self) -> bool:
        return self.orientation == '-'

    @property
    def query_length(self) -> int:
        return self.query_end + self.query_remaining

    @property
    def subject_length(self) -> int:
        """Full length of the subject sequence implied by end + remaining."""
        return self.subject_end + self.subject_remaining

    @property
    def has_alignment(self) -> bool:
        return bool(self.aligned_query and self.aligned_subject)

    def validate(self):
        """Check coordinate and gapped-string invariants.

        Raises:
            AlignmentFormatError: If any invariant is violated
        """
        if self.orientation not in ('+', '-'):
            raise AlignmentFormatError(f"{self.query_name}: unknown orientation '{self.orientation}'")
        if self.subject_start > self.subject_end or self.query_start > self.query_end:
            raise AlignmentFormatError(f"{self.query_name}: start after end")
        if not self.has_alignment:
            return
        if len(self.aligned_query) != len(self.aligned_subject):
            raise AlignmentFormatError(
                f"{self.query_name}: gapped strings differ in length "
                f"({len(self.aligned_query)} vs {len(self.aligned_subject)})")
        subject_bases = len(self.aligned_subject) - self.aligned_subject.count('-')
        if subject_bases != self.subject_end - self.subject_start + 1:
            raise AlignmentFormatError(
                f"{self.query_name}: subject span {self.subject_start}-{self.subject_end} "
                f"does not match {subject_bases} aligned subject bases")
        query_bases = len(self.aligned_query) - self.aligned_query.count('-')
        if query_bases != self.query_end - self.query_start + 1:
            raise AlignmentFormatError(
                f"{self.query_name}: query span {self.query_start}-{self.query_end} "
                f"does not match {query_bases} aligned query bases")

    def reference_oriented(self) -> Tuple[str, str]:
        """Return (aligned instance, aligned reference) with the reference forward."""
        if self.is_reverse:
            return reverse_complement(self.aligned_query), reverse_complement(self.aligned_subject)
        return self.aligned_query, self.aligned_subject

    def overlaps_query(self, other: 'AlignmentInstance') -> bool:
        return ranges_overlap(self.query_start, self.query_end, other.query_start, other.query_end)

    def overlaps_subject(self, other: 'AlignmentInstance') -> bool:
        return ranges_overlap(self.subject_start, self.subject_end, other.subject_start, other.subject_end)

    def copy(self, **changes) -> 'AlignmentInstance':
        return replace(self, **changes)


def ranges_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """True if either range has an endpoint inside the other or one contains the other."""
    return a_start <= b_end and b_start <= a_end


def alignment_stats(aligned_query: str, aligned_subject: str) -> Tuple[float, float, float]:
    """Percent substitution, deletion and insertion for a gapped pair.

    Deletions are subject bases opposite query gaps and insertions are query
    bases opposite subject gaps, both relative to the aligned query length.
    """
    mismatches = 0
    matched = 0
    deletions = 0
    insertions = 0
    for q, s in zip(aligned_query.upper(), aligned_subject.upper()):
        if q == '-' and s == '-':
            continue
        if q == '-':
            deletions += 1
        elif s == '-':
            insertions += 1
        else:
            matched += 1
            if q != s:
                mismatches += 1
    query_len = matched + insertions
    pct_sub = 100.0 * mismatches / matched if matched else 0.0
    pct_del = 100.0 * deletions / query_len if query_len else 0.0
    pct_ins = 100.0 * insertions / query_len if query_len else 0.0
    return round(pct_sub, 2), round(pct_del, 2), round(pct_ins, 2)


def markup_line(top: str, bottom: str) -> str:
    """Build the cross_match middle line: i=transition, v=transversion, -=gap, ?=ambiguous."""
    marks = []
    for a, b in zip(top.upper(), bottom.upper()):
        if a == b:
            marks.append(' ')
        elif a == '-' or b == '-':
            marks.append('-')
        elif a not in CANONICAL_BASES or b not in CANONICAL_BASES:
            marks.append('?')
        elif (a, b) in TRANSITIONS:
            marks.append('i')
        else:
            marks.append('v')
    return ''.join(marks)


def _parse_paren(field: str) -> int:
    return int(field.strip('()'))


def parse_header(line: str) -> Optional[AlignmentInstance]:
    """Parse a cross_match summary line, or return None if the line is not one."""
    m = HEADER_RE.match(line)
    if not m:
        return None
    reverse = m.group('strand') == 'C'
    if reverse:
        # C subject (remaining) end start
        subject_remaining = _parse_paren(m.group('s1'))
        subject_end = int(m.group('s2'))
        subject_start = int(m.group('s3'))
    else:
        subject_start = int(m.group('s1'))
        subject_end = int(m.group('s2'))
        subject_remaining = _parse_paren(m.group('s3'))
    return AlignmentInstance(
        score=int(m.group('score')),
        pct_div=float(m.group('sub')),
        pct_del=float(m.group('del')),
        pct_ins=float(m.group('ins')),
        query_name=m.group('qname'),
        query_start=int(m.group('qstart')),
        query_end=int(m.group('qend')),
        query_remaining=int(m.group('qrem')),
        orientation='-' if reverse else '+',
        subject_name=m.group('sname'),
        subject_start=subject_start,
        subject_end=subject_end,
        subject_remaining=subject_remaining,
    )


def parse_crossmatch(lines: Iterable[str], validate: bool = True) -> List[AlignmentInstance]:
    """Parse cross_match output, with or without -alignments bodies.

    Body lines alternate between query and subject, so the query row is the
    first row of every block.  Anything that is neither a summary line nor a
    body row (midlines, transition summaries, banners) is skipped.
    """
    instances: List[AlignmentInstance] = []
    current: Optional[AlignmentInstance] = None
    query_parts: List[str] = []
    subject_parts: List[str] = []
    expecting_query = True

    def finish():
        if current is None:
            return
        current.aligned_query = ''.join(query_parts)
        current.aligned_subject = ''.join(subject_parts)
        if validate:
            current.validate()
        instances.append(current)

    for line in lines:
        line = line.rstrip('\n')
        header = parse_header(line)
        if header is not None:
            finish()
            current = header
            query_parts = []
            subject_parts = []
            expecting_query = True
            continue
        if current is None:
            continue
        body = BODY_RE.match(line)
        if body is None:
            continue
        if expecting_query:
            query_parts.append(body.group('seq'))
        else:
            subject_parts.append(body.group('seq'))
        expecting_query = not expecting_query

    finish()
    logging.debug(f"Parsed {len(instances)} cross_match alignments")
    return instances


def read_crossmatch(path: str, validate: bool = True) -> List[AlignmentInstance]:
    with open(path, 'r') as f:
        return parse_crossmatch(f, validate=validate)


def format_header(instance: AlignmentInstance) -> str:
    """Format the cross_match summary line for an alignment."""
    fields = (f"{instance.score:>5d} {instance.pct_div:5.2f} {instance.pct_del:4.2f} {instance.pct_ins:4.2f}  "
              f"{instance.query_name}  {instance.query_start} {instance.query_end} ({instance.query_remaining})  ")
    if instance.is_reverse:
        fields += (f"C {instance.subject_name}  ({instance.subject_remaining}) "
                   f"{instance.subject_end} {instance.subject_start}")
    else:
        fields += (f"{instance.subject_name}  {instance.subject_start} "
                   f"{instance.subject_end} ({instance.subject_remaining})")
    return fields


def _advance(position: int, chunk: str, step: int) -> Tuple[int, int]:
    """Return (first, last) coordinates of the bases in a chunk and the next position."""
    bases = len(chunk) - chunk.count('-')
    if bases == 0:
        # cross_match repeats the previous coordinate for all-gap chunks
        return position - step, position
    last = position + step * (bases - 1)
    return last, last + step


def format_alignment_body(instance: AlignmentInstance, width: int = LINE_WIDTH) -> str:
    """Format the gapped query/subject rows with a transition/transversion midline."""
    if not instance.has_alignment:
        return ""
    query_label = f"  {instance.query_name}"
    subject_label = f"{'C ' if instance.is_reverse else '  '}{instance.subject_name}"
    label_width = max(len(query_label), len(subject_label)) + 1
    markup = markup_line(instance.aligned_query, instance.aligned_subject)

    q_pos = instance.query_start
    s_pos = instance.subject_end if instance.is_reverse else instance.subject_start
    s_step = -1 if instance.is_reverse else 1

    blocks = []
    for offset in range(0, len(instance.aligned_query), width):
        q_chunk = instance.aligned_query[offset:offset + width]
        s_chunk = instance.aligned_subject[offset:offset + width]
        q_first = q_pos
        s_first = s_pos
        q_last, q_pos = _advance(q_pos, q_chunk, 1)
        s_last, s_pos = _advance(s_pos, s_chunk, s_step)
        coord_width = max(len(str(q_first)), len(str(s_first)))
        blocks.append(
            f"{query_label.ljust(label_width)}{str(q_first).rjust(coord_width)} {q_chunk} {q_last}\n"
            f"{' ' * (label_width + coord_width + 1)}{markup[offset:offset + width]}\n"
            f"{subject_label.ljust(label_width)}{str(s_first).rjust(coord_width)} {s_chunk} {s_last}\n"
        )
    return "\n".join(blocks)


def format_crossmatch(instance: AlignmentInstance, show_alignment: bool = True) -> str:
    """Format one alignment in cross_match text form."""
    text = format_header(instance) + "\n"
    if show_alignment and instance.has_alignment:
        text += "\n" + format_alignment_body(instance) + "\n"
    return text


def write_crossmatch(instances: Iterable[AlignmentInstance], handle: TextIO, show_alignment: bool = True):
    for instance in instances:
        handle.write(format_crossmatch(instance, show_alignment=show_alignment))
        handle.write("\n")


# Tabular field order requested from rmblastn
RMBLAST_FIELDS = ('score', 'qseqid', 'qstart', 'qend', 'qlen', 'sseqid',
                  'sstart', 'send', 'slen', 'qseq', 'sseq')


def parse_rmblast_tabular(lines: Iterable[str], validate: bool = True) -> Iterator[AlignmentInstance]:
    """Convert rmblastn -outfmt 6 rows (fields in RMBLAST_FIELDS order) to AlignmentInstances.

    Minus-strand hits are reported with sstart > send; the subject string is
    already reverse complemented relative to the subject, which matches the
    cross_match convention.
    """
    for line_num, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        fields = line.split('\t')
        if len(fields) != len(RMBLAST_FIELDS):
            raise AlignmentFormatError(
                f"rmblast output line {line_num}: expected {len(RMBLAST_FIELDS)} fields, found {len(fields)}")
        try:
            score = int(float(fields[0]))
            qstart, qend, qlen = int(fields[2]), int(fields[3]), int(fields[4])
            sstart, send, slen = int(fields[6]), int(fields[7]), int(fields[8])
        except ValueError as e:
            raise AlignmentFormatError(f"rmblast output line {line_num}: {e}") from e
        qseq, sseq = fields[9], fields[10]
        orientation = '+'
        if sstart > send:
            sstart, send = send, sstart
            orientation = '-'
        pct_sub, pct_del, pct_ins = alignment_stats(qseq, sseq)
        instance = AlignmentInstance(
            score=score,
            pct_div=pct_sub,
            pct_del=pct_del,
            pct_ins=pct_ins,
            query_name=fields[1],
            query_start=qstart,
            query_end=qend,
            query_remaining=qlen - qend,
            orientation=orientation,
            subject_name=fields[5],
            subject_start=sstart,
            subject_end=send,
            subject_remaining=slen - send,
            aligned_query=qseq,
            aligned_subject=sseq,
        )
        if validate:
            instance.validate()
        yield instance
