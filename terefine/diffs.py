"""Side-by-side change reports for consensus edits."""

from typing import Optional

# i = transition, v = transversion, a base letter = N resolved to that base
MUTATION_MARKS = {
    "CT": 'i', "TC": 'i', "AG": 'i', "GA": 'i',
    "GT": 'v', "TG": 'v', "GC": 'v', "CG": 'v',
    "CA": 'v', "AC": 'v', "AT": 'v', "TA": 'v',
    "NA": 'A', "NC": 'C', "NG": 'G', "NT": 'T',
}
AMBIGUITY_CODES = set("BDHVRYKMSWNX")


def diff_markup(old: str, new: str) -> str:
    """Positional markup line comparing two sequences.

    Identical positions are blank, substitutions are marked i/v, ambiguity
    codes on either side give '?', and positions past the end of the
    shorter sequence give '-'.
    """
    old = old.upper()
    new = new.upper()
    marks = []
    for i in range(max(len(old), len(new))):
        old_base = old[i] if i < len(old) else " "
        new_base = new[i] if i < len(new) else " "
        pair = old_base + new_base
        if pair in MUTATION_MARKS:
            marks.append(MUTATION_MARKS[pair])
        elif old_base in AMBIGUITY_CODES or new_base in AMBIGUITY_CODES:
            marks.append('?')
        elif old_base == " " or new_base == " ":
            marks.append('-')
        else:
            marks.append(' ')
    return ''.join(marks)


def format_sequence_diff(old: str, new: str, prefix: str = "", label: Optional[str] = None) -> str:
    """Three-line Orig/markup/New report of a consensus change."""
    lines = []
    if label:
        lines.append(f"{prefix}{label}")
    lines.append(f"{prefix}    Orig: {old.upper()}")
    lines.append(f"{prefix}          {diff_markup(old, new)}")
    lines.append(f"{prefix}     New: {new.upper()}")
    return "\n".join(lines) + "\n"
