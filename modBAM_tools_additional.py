import logging
import numpy as np
import pandas as pd
import pysam
from collections.abc import Iterable
from collections import namedtuple
from itertools import count

from modBAM_tools import BaseModificationSet, FormatError, get_base_modification_sets, value_string

logger = logging.getLogger(__name__)

ModBase = namedtuple('ModBase', (
    'read_id', 'seq_pos', 'ref_pos', 'ref_strand', 'mod_strand',
    'can_base', 'mod_base', 'mod_qual', 'label'), defaults=('', -1, -1, 'unmapped', '+', '', '', -1, ''))

# above tuple follows the column names of `modkit extract` where possible

MOD_TABLE_COLUMNS = list(ModBase._fields)

SUMMARY_COLUMNS = ['read_id', 'can_base', 'mod_strand', 'mod_base', 'count_mod', 'count_unmod']

MM_TAGS = ("MM", "Mm")
ML_TAGS = ("ML", "Ml")

FILTER_OPTIONS = ("all", "5mC", "C")


def filter_modification_sets(mod_sets: Iterable[BaseModificationSet], option: str = "all") -> list[BaseModificationSet]:
    """ Select modification sets as per display option

    Args:
        mod_sets: modification sets of a read
        option: (default "all") one of "all" (all modifications), "5mC" (5-methylcytosine only),
                "C" (any modification of cytosine)

    Returns:
        list of modification sets

    Examples:
        >>> from modBAM_tools import get_base_modification_sets
        >>> mod_sets = get_base_modification_sets("C+mh,0;A+a,0;", None, "CA")
        >>> [k.modification for k in filter_modification_sets(mod_sets, "5mC")]
        ['m']
        >>> [k.modification for k in filter_modification_sets(mod_sets, "C")]
        ['m', 'h']
    """
    if option == "all":
        return list(mod_sets)
    elif option == "5mC":
        return [k for k in mod_sets if k.base == "C" and k.modification == "m"]
    elif option == "C":
        return [k for k in mod_sets if k.base == "C"]
    else:
        raise ValueError(f"Unknown filter option {option}!")


def convert_probabilities_from_modBAM_to_normal(prob_0_to_255: Iterable[int]) -> list[float]:
    """ Convert modification probabilities from modBAM notation to normal notation.
    In modBAM notation, an integer x means the modification probability lies between
    x/256 and (x+1)/256. We report the midpoint of the interval.

    Args:
        prob_0_to_255: each entry a number from 0 to 255

    Returns:
        list of probabilities in normal notation

    Examples:
        >>> convert_probabilities_from_modBAM_to_normal([128, 129])
        [0.501953125, 0.505859375]
    """
    return list(map(lambda x: (x + x + 1) / (256 * 2), prob_0_to_255))


def count_calls(mod_set: BaseModificationSet, threshold: float = 0.5) -> tuple[int, int]:
    """ Count modified and unmodified calls in a modification set

    Args:
        mod_set: modification set
        threshold: (default 0.5) probability at or above (below) which a call is modified (unmodified)

    Returns:
        tuple of two ints, number of modified and unmodified calls

    Examples:
        >>> from modBAM_tools import get_base_modification_sets
        >>> count_calls(get_base_modification_sets("T+T.,0,1;", [200, 100], "TTT")[0])
        (1, 2)
    """
    if not 0 <= threshold <= 1:
        raise ValueError("Threshold must be between 0 and 1!")

    values = np.fromiter(mod_set.likelihoods.values(), dtype=int, count=len(mod_set.likelihoods))
    count_mod = int(np.count_nonzero(values >= threshold * 256))

    return count_mod, len(values) - count_mod


def mod_sets_to_rows(mod_sets: Iterable[BaseModificationSet], read_id: str = "",
                     ref_positions: list[int] | None = None, ref_strand: str = "unmapped") -> Iterable[ModBase]:
    """ One row per modification call, sets in given order and positions in ascending order

    Args:
        mod_sets: modification sets of one read
        read_id: (default "") read id
        ref_positions: (default None) reference coordinate per position along the read sequence, -1 if unaligned.
                       If not given, all reference coordinates are -1.
        ref_strand: (default "unmapped") '+', '-' or 'unmapped'

    Returns:
        iterator of ModBase
    """
    for mod_set in mod_sets:
        for pos in mod_set.positions():
            qual = mod_set.likelihoods[pos]
            yield ModBase(read_id=read_id, seq_pos=pos,
                          ref_pos=ref_positions[pos] if pos < len(ref_positions or []) else -1,
                          ref_strand=ref_strand, mod_strand=mod_set.strand,
                          can_base=mod_set.base, mod_base=mod_set.modification,
                          mod_qual=convert_probabilities_from_modBAM_to_normal([qual])[0],
                          label=value_string(mod_set.modification, qual))


def mod_sets_to_table(mod_sets: Iterable[BaseModificationSet], read_id: str = "",
                      ref_positions: list[int] | None = None, ref_strand: str = "unmapped") -> pd.DataFrame:
    """ Modification calls in a tabular format, see mod_sets_to_rows for arguments

    Examples:
        >>> from modBAM_tools import get_base_modification_sets
        >>> df = mod_sets_to_table(get_base_modification_sets("C+m,1;", [255], "CCG"), "read_1")
        >>> df.shape
        (1, 9)
        >>> df.loc[0, "label"]
        'Base modification: 5mC (100%)'
    """
    return pd.DataFrame(mod_sets_to_rows(mod_sets, read_id, ref_positions, ref_strand), columns=MOD_TABLE_COLUMNS)


def summarise_mod_sets(mod_sets: Iterable[BaseModificationSet], threshold: float = 0.5,
                       read_id: str = "") -> pd.DataFrame:
    """ Counts of modified and unmodified calls per modification set

    Args:
        mod_sets: modification sets of one read
        threshold: (default 0.5) see count_calls
        read_id: (default "") read id

    Returns:
        pandas DataFrame with columns read_id, can_base, mod_strand, mod_base, count_mod, count_unmod
    """
    return pd.DataFrame(
        ((read_id, k.base, k.strand, k.modification, *count_calls(k, threshold)) for k in mod_sets),
        columns=SUMMARY_COLUMNS
    )


def cigar_to_query_ref_positions(cigar_str: str, ref_start: int) -> list[int]:
    """ Use cigar string to map each query coordinate to a reference coordinate

    Args:
        cigar_str: cigar string
        ref_start: starting position along reference, 0-based

    Returns:
        list with one entry per query base (hard clips excluded), the reference coordinate or -1 if unaligned

    Examples:
        >>> cigar_to_query_ref_positions("3M", 10)
        [10, 11, 12]
        >>> cigar_to_query_ref_positions("2S2M1I1M", 0)
        [-1, -1, 0, 1, -1, 2]
        >>> cigar_to_query_ref_positions("1H1M5D1=", 4)
        [4, 10]
    """
    ref_pos = ref_start
    positions = []
    num = 0

    for k in cigar_str:
        if '0' <= k <= '9':
            num = num * 10 + int(k)
            continue

        if k in ('M', '=', 'X'):
            positions.extend(range(ref_pos, ref_pos + num))
            ref_pos += num
        elif k in ('D', 'N'):
            ref_pos += num
        elif k in ('I', 'S'):
            positions.extend([-1] * num)
        elif k not in ('P', 'H'):
            raise ValueError('Invalid cigar string!')
        num = 0

    return positions


def parse_ml_values(ml_part: str) -> list[int]:
    """ Convert the value of an ML tag in SAM text format to a list of ints

    Examples:
        >>> parse_ml_values("C,1,2,255")
        [1, 2, 255]
        >>> parse_ml_values("C")
        []
    """
    type_code, *values = ml_part.split(",")
    if type_code != "C":
        raise FormatError(f"ML tag must be an array of type C, not {type_code}!")
    try:
        return [int(k) for k in values]
    except ValueError:
        raise FormatError("Bad probability!")


class ModBamRecordProcessor:
    """Decode modification data in one line of a modBAM file in SAM text format.
    To understand what MM and ML mean, refer to https://samtools.github.io/hts-specs/SAMtags.pdf
    To understand what other BAM fields mean, refer to https://samtools.github.io/hts-specs/SAMv1.pdf

    Attributes:
        filter_option (str): modification sets to retain, see filter_modification_sets
        read_id (str): read id of the record
        flag (int): flag of the record
        contig (str): contig of the record
        start (int): start position of the record, stored as 0-based
        qual (int): mapping quality of the record
        cigar (str): cigar string of the record
        seq (str): sequence of the record
        is_rev (bool): whether the record is reverse
        is_unmapped (bool): whether the record is unmapped
        mm (str): contents of MM tag
        ml (list): contents of ML tag, None if absent
        ref_positions (list): reference coordinate per base of seq, empty if unmapped
        mod_sets (list): decoded modification sets
    """
    filter_option: str

    read_id: str
    flag: int
    contig: str
    start: int
    qual: int
    cigar: str
    seq: str
    is_rev: bool
    is_unmapped: bool

    mm: str
    ml: list[int] | None
    ref_positions: list[int]
    mod_sets: list[BaseModificationSet]

    def __init__(self, filter_option: str = "all"):
        """Initializes the instance

        Args:
            filter_option (str): (default "all") defines filter_option of this instance
        """
        if filter_option not in FILTER_OPTIONS:
            raise ValueError(f"Unknown filter option {filter_option}!")

        self.filter_option = filter_option

        self.delete_data()

    def delete_data(self) -> None:
        """ Remove stored data (but not parameters). """
        self.read_id = ""
        self.flag = 0
        self.contig = ""
        self.start = 0
        self.qual = 0
        self.cigar = ""
        self.seq = ""
        self.is_rev = False
        self.is_unmapped = False

        self.mm = ""
        self.ml = None
        self.ref_positions = []
        self.mod_sets = []

    def process_modbam_line(self, x: str) -> None:
        """Process data from one mod bam line

        Examples:
            >>> processor = ModBamRecordProcessor()
            >>> processor.process_modbam_line("r1\\t0\\tchr1\\t101\\t60\\t4M\\t*\\t0\\t0\\tCACG\\t*\\tMM:Z:C+m,1;\\tML:B:C,200")
            >>> [(k.modification, dict(k.likelihoods)) for k in processor.mod_sets]
            [('m', {2: 200})]
        """

        # delete previously stored data
        self.delete_data()

        for cnt, k in zip(count(), x.strip().split("\t")):

            if cnt >= 11 and k.startswith(tuple(f"{tag}:Z:" for tag in MM_TAGS)):
                self.mm = k[5:]
            elif cnt >= 11 and k.startswith(tuple(f"{tag}:B:" for tag in ML_TAGS)):
                self.ml = parse_ml_values(k[5:])
            elif cnt == 0:
                self.read_id = k
            elif cnt == 1:
                self.flag = int(k)
                self.is_unmapped = (self.flag & 4 == 4)
                self.is_rev = (self.flag & 16 == 16)
            elif cnt == 2:
                self.contig = k
                if self.contig == "*":
                    self.is_unmapped = True
            elif cnt == 3:
                self.start = int(k) - 1
                if self.start == -1:
                    self.is_unmapped = True
            elif cnt == 4:
                self.qual = int(k)
            elif cnt == 5:
                self.cigar = k
                if self.cigar == "*":
                    self.is_unmapped = True
            elif cnt == 9:
                self.seq = k
                if self.seq == "*":
                    raise ValueError("We cannot deal with * sequences!")

        if not self.is_unmapped:
            self.ref_positions = cigar_to_query_ref_positions(self.cigar, self.start)

        if not self.mm:
            if self.ml:
                logger.warning("Read %s has an ML tag but no MM tag", self.read_id)
            else:
                logger.debug("Read %s has no modification data", self.read_id)
            return

        self.mod_sets = filter_modification_sets(
            get_base_modification_sets(self.mm, self.ml, self.seq, self.is_rev),
            self.filter_option)

    def has_read(self) -> bool:
        """Check if a read has been read by the processor"""
        return len(self.read_id) > 0

    def has_data(self) -> bool:
        """Check if modification calls are available"""
        return self.has_read() and any(len(k.likelihoods) > 0 for k in self.mod_sets)

    def ref_strand(self) -> str:
        if self.is_unmapped:
            return "unmapped"
        return "-" if self.is_rev else "+"

    def mod_data_to_table(self) -> Iterable[ModBase]:
        """ Return modification data of the record as ModBase rows """
        if not self.has_data():
            return iter([])

        return mod_sets_to_rows(self.mod_sets, self.read_id, self.ref_positions, self.ref_strand())

    def count_bases(self, threshold: float = 0.5) -> pd.DataFrame:
        """ Count modified and unmodified calls per modification set, see summarise_mod_sets """
        if not self.has_read():
            raise ValueError("No data available!")

        return summarise_mod_sets(self.mod_sets, threshold, self.read_id)


def get_tag_with_aliases(segment: pysam.AlignedSegment, tags: tuple[str, ...]):
    """ Value of the first tag in tags present in segment, None if none present """
    for tag in tags:
        if segment.has_tag(tag):
            return segment.get_tag(tag)
    return None


def get_base_modification_sets_from_segment(segment: pysam.AlignedSegment,
                                            filter_option: str = "all") -> list[BaseModificationSet]:
    """ Decode modification data in one pysam record

    Args:
        segment: pysam record
        filter_option: (default "all") see filter_modification_sets

    Returns:
        list of BaseModificationSet, positions are along segment.query_sequence
    """
    if segment.query_sequence is None:
        raise ValueError("We cannot deal with * sequences!")

    mm = get_tag_with_aliases(segment, MM_TAGS)
    ml = get_tag_with_aliases(segment, ML_TAGS)

    if mm is None:
        if ml is not None:
            logger.warning("Read %s has an ML tag but no MM tag", segment.query_name)
        return []

    return filter_modification_sets(
        get_base_modification_sets(mm, ml, segment.query_sequence, segment.is_reverse),
        filter_option)


def get_mod_calls_from_modBAM(mod_bam_file: str, contig: str, start: int, end: int,
                              filter_option: str = "all") -> Iterable[ModBase]:
    """ Gets modification calls at reference coords in interval on all reads

    Args:
        mod_bam_file: path to indexed modBAM file
        contig: contig on reference genome
        start: start position on ref genome, 0-based
        end: end position on ref genome, 0-based, not included
        filter_option: (default "all") see filter_modification_sets

    Returns:
        Iterator of ModBase, one per call
    """
    with pysam.AlignmentFile(mod_bam_file, "rb") as fb:
        for segment in fb.fetch(contig, start, end):

            mod_sets = get_base_modification_sets_from_segment(segment, filter_option)
            if not mod_sets:
                continue

            ref_positions = [-1 if k is None else k for k in segment.get_reference_positions(full_length=True)]
            ref_strand = "-" if segment.is_reverse else "+"

            yield from filter(lambda y: start <= y.ref_pos < end,
                              mod_sets_to_rows(mod_sets, segment.query_name, ref_positions, ref_strand))
