import logging
from collections import namedtuple
from types import MappingProxyType

logger = logging.getLogger(__name__)

# display names of the single-letter modification codes in the SAM tags specification,
# https://samtools.github.io/hts-specs/SAMtags.pdf
MOD_CODE_NAMES = MappingProxyType({
    "m": "5mC",
    "h": "5hmC",
    "f": "5fC",
    "c": "5caC",
    "g": "5hmU",
    "e": "5fU",
    "b": "5caU",
    "a": "6mA",
    "o": "8xoG",
    "n": "Xao",
    "C": "Unknown C",
    "T": "Unknown T",
    "A": "Unknown A",
    "G": "Unknown G",
    "N": "Unknown",
})

# display names of some ChEBI codes that turn up in modBAM files
CHEBI_CODE_NAMES = MappingProxyType({
    "21839": "4mC",
    "17596": "Inosine",
    "17802": "Pseudouridine",
    "472552": "BrdU",
})

UNKNOWN_MOD_LABEL = "Unknown"

VALID_BASES = ("A", "C", "G", "T", "N")
VALID_STRANDS = ("+", "-")
SKIP_MODE_CHARS = (".", "?")

_COMPLEMENT = str.maketrans("ACGTNacgtn", "TGCANtgcan")


class FormatError(ValueError):
    """ Raised when the modification positions or likelihood data are malformed """


ModificationGroup = namedtuple('ModificationGroup', (
    'base', 'strand', 'skipped_bases_called', 'modifications', 'skips', 'mode'))


class BaseModificationSet(namedtuple('BaseModificationSet', ('base', 'strand', 'modification', 'likelihoods'))):
    """ Calls of one modification on one canonical base and strand of a read.

    Attributes:
        base (str): canonical base, one of A, C, G, T, N
        strand (str): strand of the modification call as written in the MM tag, '+' or '-'
        modification (str): single-letter code or ChEBI code
        likelihoods (mapping): position on the sequence as supplied -> likelihood from 0 to 255
    """
    __slots__ = ()

    def positions(self) -> list[int]:
        """ Positions with a call, in ascending order """
        return sorted(self.likelihoods)

    def is_chebi(self) -> bool:
        return is_chebi(self.modification)

    def label(self) -> str:
        """ Display name of the modification """
        return modification_label(self.modification)


class LikelihoodCursor:
    """ Forward-only reader over the likelihood (ML) values of one read.

    If no likelihoods are supplied, every read returns 255 i.e. a certain call.

    Examples:
        >>> cursor = LikelihoodCursor(bytes([10, 20]))
        >>> cursor.next_likelihood(), cursor.next_likelihood()
        (10, 20)
        >>> cursor.next_likelihood()
        Traceback (most recent call last):
            ...
        modBAM_tools.FormatError: Likelihood data exhausted after 2 values!
        >>> LikelihoodCursor(None).next_likelihood()
        255
    """

    def __init__(self, likelihoods=None):
        self.likelihoods = likelihoods
        self.consumed = 0

    def has_data(self) -> bool:
        return self.likelihoods is not None

    def next_likelihood(self) -> int:
        if self.likelihoods is None:
            return 255

        if self.consumed >= len(self.likelihoods):
            raise FormatError(f"Likelihood data exhausted after {self.consumed} values!")

        value = int(self.likelihoods[self.consumed])
        if not 0 <= value <= 255:
            raise FormatError("Bad probability!")
        self.consumed += 1

        return value

    def remaining(self) -> int:
        """ Number of values not yet read, 0 if there is no data """
        if self.likelihoods is None:
            return 0
        return len(self.likelihoods) - self.consumed


def is_chebi(code) -> bool:
    """ Check if a modification code is a ChEBI code i.e. a string of decimal digits

    Args:
        code (str or None): modification code

    Returns:
        bool

    Examples:
        >>> is_chebi("12345")
        True
        >>> is_chebi("m")
        False
        >>> is_chebi("")
        False
        >>> is_chebi(None)
        False
        >>> is_chebi("12a")
        False
    """
    if not code:
        return False
    return all("0" <= k <= "9" for k in code)


def split_mm_groups(mm: str) -> list[list[str]]:
    """ Split contents of an MM tag into groups, each a list of comma-separated tokens

    Args:
        mm (str): contents of MM tag without the 'MM:Z:' prefix

    Returns:
        list of groups, each is a list of strings with the header first and skip counts after

    Raises:
        FormatError: If a non-empty string contains no groups.

    Examples:
        >>> split_mm_groups("C+m?,1,0;A+a;")
        [['C+m?', '1', '0'], ['A+a']]
        >>> split_mm_groups("")
        []
        >>> split_mm_groups(";")
        Traceback (most recent call last):
            ...
        modBAM_tools.FormatError: No modification groups found!
    """
    if not mm:
        return []

    groups = [k.split(",") for k in mm.split(";") if k]

    if not groups:
        raise FormatError("No modification groups found!")

    return groups


def resolve_modification_codes(code_str: str) -> tuple[str, ...]:
    """ Get the list of modification codes from the code part of an MM group header.

    A multi-character code is one ChEBI code if all its characters are digits,
    otherwise each character is a separate single-letter code.

    Args:
        code_str (str): code part of header, e.g. 'mh' in 'C+mh?'

    Returns:
        tuple of modification codes

    Examples:
        >>> resolve_modification_codes("m")
        ('m',)
        >>> resolve_modification_codes("76792")
        ('76792',)
        >>> resolve_modification_codes("mh")
        ('m', 'h')
    """
    if len(code_str) > 1 and not is_chebi(code_str):
        return tuple(code_str)
    return (code_str,)


def parse_mm_group(tokens: list[str]) -> ModificationGroup:
    """ Parse one MM group into its header information and skip counts

    Args:
        tokens (list of str): comma-separated parts of the group, header first

    Returns:
        ModificationGroup

    Raises:
        FormatError: If the base, strand, code or skip counts are malformed.

    Examples:
        >>> parse_mm_group(["C+mh.", "5", "0"])
        ModificationGroup(base='C', strand='+', skipped_bases_called=True, modifications=('m', 'h'), skips=(5, 0), mode='.')
        >>> parse_mm_group(["A-a"])
        ModificationGroup(base='A', strand='-', skipped_bases_called=False, modifications=('a',), skips=(), mode='')
    """
    header = tokens[0]

    if len(header) < 2:
        raise FormatError(f"Bad modification header {header!r}!")

    base = header[0]
    strand = header[1]

    if base not in VALID_BASES:
        raise FormatError(f"Bad base {base!r} in modification header {header!r}!")
    if strand not in VALID_STRANDS:
        raise FormatError(f"Bad strand {strand!r} in modification header {header!r}!")

    # the mode character, if present, says how to treat bases skipped over
    mode = header[-1] if header.endswith(SKIP_MODE_CHARS) and len(header) > 2 else ""
    code_str = header[2:-1] if mode else header[2:]

    if not code_str:
        raise FormatError(f"Missing modification code in header {header!r}!")

    skips = []
    for token in tokens[1:]:
        if not (token.isascii() and token.isdigit()):
            raise FormatError(f"Bad skip count {token!r} in modification group {header!r}!")
        skips.append(int(token))

    return ModificationGroup(base=base, strand=strand, skipped_bases_called=(mode == "."),
                             modifications=resolve_modification_codes(code_str),
                             skips=tuple(skips), mode=mode)


def scan_mm_group(group: ModificationGroup, seq: str, cursor: LikelihoodCursor,
                  is_reverse: bool = False) -> dict[str, dict[int, int]]:
    """ Find the positions of modification calls of one group by walking the sequence

    Args:
        group (ModificationGroup): a parsed group with at least one skip count
        seq (str): sequence to walk along i.e. the reverse complement of the read sequence for reverse reads
        cursor (LikelihoodCursor): likelihood source shared across all groups of the read
        is_reverse (bool): (default False) positions are reported as len(seq) - 1 - index if True

    Returns:
        dict of modification code -> dict of position -> likelihood

    Examples:
        >>> group = parse_mm_group(["C+m", "1", "0"])
        >>> scan_mm_group(group, "CCGTCG", LikelihoodCursor())
        {'m': {1: 255, 4: 255}}
        >>> scan_mm_group(group, "CCGTCG", LikelihoodCursor(), is_reverse=True)
        {'m': {4: 255, 1: 255}}
    """
    calls = {m: {} for m in group.modifications}

    skips = iter(group.skips)
    skip = next(skips)
    match_count = 0
    is_complete = False
    n = len(seq)

    for p, b in enumerate(seq):

        if not (group.base == "N" or b == group.base):
            continue

        position = n - 1 - p if is_reverse else p

        if match_count == skip:
            for m in group.modifications:
                calls[m][position] = cursor.next_likelihood()
            skip = next(skips, None)
            if skip is None:
                is_complete = True
                break
            match_count = 0
        else:
            # skipped bases in '.' mode are called as unmodified, not as missing
            if group.skipped_bases_called:
                for m in group.modifications:
                    calls[m][position] = 0
            match_count += 1

    if not is_complete:
        logger.warning("Sequence ended before all skip counts of modification group %s%s%s were used",
                       group.base, group.strand, "".join(group.modifications))

    return calls


def reverse_complement(x: str) -> str:
    """ Get reverse complement of a DNA sequence, keeping case

    Examples:
        >>> reverse_complement("AGTATGGCT")
        'AGCCATACT'
        >>> reverse_complement("acgN")
        'Ncgt'
    """
    return x.translate(_COMPLEMENT)[::-1]


def get_base_modification_sets(mm: str, ml, seq, is_reverse: bool = False) -> list[BaseModificationSet]:
    """ Decode the MM and ML tags of one read into modification calls.

    Using the SAM specification at
    https://samtools.github.io/hts-specs/SAMtags.pdf

    Args:
        mm (str): contents of MM tag e.g. 'C+m?,5,12,0;C+h?,5,12,0;'. Empty string or None means no data.
        ml (bytes, list of ints or None): contents of ML tag. If None, all calls get likelihood 255.
        seq (str or bytes): read sequence as stored in the record
        is_reverse (bool): (default False) whether the read is aligned to the reverse strand.
            MM positions then count along the reverse complement of seq.

    Returns:
        list of BaseModificationSet, one per modification code in order of appearance.
        Positions are along seq as supplied. Groups without skip counts are omitted.

    Raises:
        FormatError: If the tags are malformed or ML has too few values.

    Examples:
        >>> [(k.modification, dict(k.likelihoods)) for k in get_base_modification_sets("C+mh,0,0;", [1, 2, 3, 4], "CCA")]
        [('m', {0: 1, 1: 3}), ('h', {0: 2, 1: 4})]
        >>> get_base_modification_sets("A+a;", None, "AAA")
        []
    """
    if isinstance(seq, (bytes, bytearray)):
        seq = seq.decode("ascii")

    fwd_seq = reverse_complement(seq) if is_reverse else seq

    cursor = LikelihoodCursor(ml)
    mod_sets = []

    for tokens in split_mm_groups(mm or ""):

        group = parse_mm_group(tokens)

        # a group without skip counts only states that the modification is absent
        if not group.skips:
            continue

        calls = scan_mm_group(group, fwd_seq, cursor, is_reverse)

        mod_sets.extend(BaseModificationSet(group.base, group.strand, m, MappingProxyType(calls[m]))
                        for m in group.modifications)

    if cursor.remaining() > 0:
        logger.debug("%d likelihood values were not used", cursor.remaining())

    logger.debug("Decoded %d modification sets using %d likelihood values", len(mod_sets), cursor.consumed)

    return mod_sets


def modification_label(code: str) -> str:
    """ Display name of a modification code

    Examples:
        >>> modification_label("m")
        '5mC'
        >>> modification_label("21839")
        '4mC'
        >>> modification_label("76792")
        '76792'
        >>> modification_label("z")
        'Unknown'
    """
    if is_chebi(code):
        return CHEBI_CODE_NAMES.get(code, code)
    return MOD_CODE_NAMES.get(code, UNKNOWN_MOD_LABEL)


def likelihood_to_percent(likelihood: int) -> int:
    """ Convert likelihood from 0 to 255 to a percentage, treating signed bytes as unsigned

    Examples:
        >>> likelihood_to_percent(255), likelihood_to_percent(128), likelihood_to_percent(-1)
        (100, 50, 100)
    """
    return round(100 * (int(likelihood) & 0xFF) / 255)


def value_string(code: str, likelihood: int) -> str:
    """ Human-readable description of one modification call

    Args:
        code (str): modification code
        likelihood (int): likelihood from 0 to 255

    Returns:
        str

    Examples:
        >>> value_string("m", 255)
        'Base modification: 5mC (100%)'
        >>> value_string("z", 128)
        'Base modification: Unknown (50%)'
    """
    return f"Base modification: {modification_label(code)} ({likelihood_to_percent(likelihood)}%)"
