import doctest
import unittest
import modBAM_tools
from modBAM_tools import get_base_modification_sets, is_chebi, value_string, \
    split_mm_groups, parse_mm_group, scan_mm_group, LikelihoodCursor, FormatError, \
    BaseModificationSet


def load_tests(loader, tests, ignore):
    """ Run the examples in the docstrings of modBAM_tools too """
    tests.addTests(doctest.DocTestSuite(modBAM_tools))
    return tests


def as_tuples(mod_sets):
    """ Convert modification sets to tuples with plain dicts for easy comparison """
    return [(k.base, k.strand, k.modification, dict(k.likelihoods)) for k in mod_sets]


class TestGetBaseModificationSets(unittest.TestCase):

    def test_single_modification(self):
        """ Test that skip counts select the right bases and scanning stops after the last one """
        self.assertEqual(
            [("C", "+", "m", {1: 255, 4: 255})],
            as_tuples(get_base_modification_sets("C+m,1,0;", None, "CCGTCG"))
        )

    def test_header_only_group(self):
        """ Test that a group without skip counts produces no output """
        self.assertEqual([], get_base_modification_sets("A+a;", None, "AAGA"))

    def test_chebi_code(self):
        """ Test that a numeric code is one modification and not five """
        self.assertEqual(
            [("C", "+", "76792", {3: 255, 4: 255})],
            as_tuples(get_base_modification_sets("C+76792,3,0;", None, "CCCCCC"))
        )

    def test_multiple_modifications(self):
        """ Test that modifications in one group share positions but have separate likelihoods """
        mod_sets = get_base_modification_sets("C+mh,0,0;", [10, 20, 30, 40], "CCGA")

        self.assertEqual(
            [("C", "+", "m", {0: 10, 1: 30}),
             ("C", "+", "h", {0: 20, 1: 40})],
            as_tuples(mod_sets)
        )

        self.assertEqual(
            [("C", "+", "m", {0: 255, 1: 255}),
             ("C", "+", "h", {0: 255, 1: 255})],
            as_tuples(get_base_modification_sets("C+mh,0,0;", None, "CCGA"))
        )

    def test_skipped_bases_called(self):
        """ Test that '.' records skipped bases as unmodified and '?' does not """
        self.assertEqual(
            [("C", "+", "m", {0: 0, 1: 200, 4: 100})],
            as_tuples(get_base_modification_sets("C+m.,1,0;", [200, 100], "CCGTCG"))
        )
        self.assertEqual(
            [("C", "+", "m", {1: 200, 4: 100})],
            as_tuples(get_base_modification_sets("C+m?,1,0;", [200, 100], "CCGTCG"))
        )
        self.assertEqual(
            [("C", "+", "m", {1: 200, 4: 100})],
            as_tuples(get_base_modification_sets("C+m,1,0;", [200, 100], "CCGTCG"))
        )

    def test_bases_after_last_call_not_recorded(self):
        """ Test that scanning stops after the last skip count even in '.' mode """
        self.assertEqual(
            [("C", "+", "m", {0: 255})],
            as_tuples(get_base_modification_sets("C+m.,0;", None, "CCC"))
        )

    def test_reverse_strand(self):
        """ Test that reverse reads are scanned along the reverse complement and positions mapped back """

        # reverse complement of CGAAG is CTTCG, whose second C is at index 3 i.e. index 1 of the read sequence
        self.assertEqual(
            [("C", "+", "m", {1: 255})],
            as_tuples(get_base_modification_sets("C+m,1;", None, "CGAAG", is_reverse=True))
        )

        self.assertEqual(
            [("C", "+", "m", {4: 0, 1: 7})],
            as_tuples(get_base_modification_sets("C+m.,1;", [7], "CGAAG", is_reverse=True))
        )

    def test_mod_strand_does_not_reverse(self):
        """ Test that the strand in the MM header is only a label """
        self.assertEqual(
            [("G", "-", "m", {2: 255})],
            as_tuples(get_base_modification_sets("G-m,1;", None, "GAG"))
        )

    def test_wildcard_base(self):
        """ Test that N matches any base """
        self.assertEqual(
            [("N", "+", "n", {2: 255})],
            as_tuples(get_base_modification_sets("N+n,2;", None, "ACGT"))
        )

    def test_likelihood_order_across_groups(self):
        """ Test that likelihoods are consumed group after group in scan order """
        self.assertEqual(
            [("C", "+", "m", {0: 1}),
             ("A", "+", "a", {1: 2, 2: 3})],
            as_tuples(get_base_modification_sets("C+m,0;A+a,0,0;", [1, 2, 3], "CAA"))
        )
        self.assertEqual(
            [("A", "+", "a", {1: 1, 2: 2}),
             ("C", "+", "m", {0: 3})],
            as_tuples(get_base_modification_sets("A+a,0,0;C+m,0;", [1, 2, 3], "CAA"))
        )

    def test_header_only_group_consumes_nothing(self):
        """ Test that a header-only group does not consume likelihoods """
        self.assertEqual(
            [("C", "+", "m", {0: 7})],
            as_tuples(get_base_modification_sets("A+a.;C+m,0;", [7], "CA"))
        )

    def test_input_types(self):
        """ Test that sequences and likelihoods are accepted as bytes """
        self.assertEqual(
            [("C", "+", "m", {1: 9, 4: 8})],
            as_tuples(get_base_modification_sets("C+m,1,0", bytes([9, 8]), b"CCGTCG"))
        )

    def test_empty_input(self):
        """ Test that empty MM data yields no sets """
        self.assertEqual([], get_base_modification_sets("", None, "CCGTCG"))
        self.assertEqual([], get_base_modification_sets(None, [1, 2], "CCGTCG"))

    def test_sequence_too_short(self):
        """ Test that running out of sequence gives a warning and the calls found so far """
        with self.assertLogs("modBAM_tools", level="WARNING"):
            mod_sets = get_base_modification_sets("C+m,0,5;", None, "CC")
        self.assertEqual([("C", "+", "m", {0: 255})], as_tuples(mod_sets))

    def test_likelihood_underrun(self):
        """ Test that running out of likelihoods is an error """
        with self.assertRaises(FormatError):
            get_base_modification_sets("C+m,0,0;", [5], "CC")
        with self.assertRaises(FormatError):
            get_base_modification_sets("C+m,0;", b"", "CC")
        with self.assertRaises(FormatError):
            get_base_modification_sets("C+mh,0;", [5], "CC")

    def test_malformed_input(self):
        """ Test that malformed MM and ML data raise FormatError """
        for mm in [";", ";;", "X+m,0;", "C*m,0;", "C+m,a;", "C+m,-1;", "C+m,1.5;", "C+m,,0;",
                   "C+,0;", "C+.,0;", "C", "C+m,0;Z+a,0;"]:
            with self.subTest(mm=mm):
                with self.assertRaises(FormatError):
                    get_base_modification_sets(mm, None, "CCAZ")

        with self.assertRaises(FormatError):
            get_base_modification_sets("C+m,0;", [256], "C")

        # a FormatError is also a ValueError
        with self.assertRaises(ValueError):
            get_base_modification_sets("C+m,x;", None, "C")

    def test_shared_positions_and_range(self):
        """ Test that all modifications of a group share positions, and positions are within the sequence """
        seq = "ACGCGTTCGACCGNTCAGC"
        mm = "C+mhf.,0,2,1;G-o?,1,0;N+n,3,3;"
        for is_reverse in (False, True):
            mod_sets = get_base_modification_sets(mm, None, seq, is_reverse)
            self.assertEqual(5, len(mod_sets))
            self.assertTrue(mod_sets[0].positions() == mod_sets[1].positions() == mod_sets[2].positions())
            self.assertTrue(all(0 <= p < len(seq) for k in mod_sets for p in k.likelihoods))

    def test_consumption_and_determinism(self):
        """ Test that one likelihood is read per call per modification and that decoding is repeatable """
        cursor = LikelihoodCursor(list(range(10)))
        group = parse_mm_group(["C+mh.", "0", "1"])
        calls = scan_mm_group(group, "CCCC", cursor)
        self.assertEqual(4, cursor.consumed)
        self.assertEqual({"m": {0: 0, 1: 0, 2: 2}, "h": {0: 1, 1: 0, 2: 3}}, calls)

        ml = [11, 22, 33, 44, 55]
        first = get_base_modification_sets("C+m,0,1;T+T,1;", ml, "CTCCT")
        second = get_base_modification_sets("C+m,0,1;T+T,1;", ml, "CTCCT")
        self.assertEqual(as_tuples(first), as_tuples(second))
        self.assertEqual([("C", "+", "m", {0: 11, 3: 22}), ("T", "+", "T", {4: 33})], as_tuples(first))

    def test_output_is_immutable(self):
        """ Test that the likelihoods of an output set cannot be altered """
        mod_set = get_base_modification_sets("C+m,0;", None, "C")[0]
        self.assertIsInstance(mod_set, BaseModificationSet)
        with self.assertRaises(TypeError):
            mod_set.likelihoods[0] = 1


class TestGroupParsing(unittest.TestCase):

    def test_split_mm_groups(self):
        """ Test splitting of MM data into groups """
        self.assertEqual([["C+m", "1"], ["A-a."]], split_mm_groups("C+m,1;A-a.;"))
        self.assertEqual([["C+m", "1"]], split_mm_groups("C+m,1"))
        self.assertEqual([], split_mm_groups(""))

    def test_parse_mm_group(self):
        """ Test parsing of group headers """
        group = parse_mm_group(["C+m?", "5", "12", "0"])
        self.assertEqual(("C", "+", False, ("m",), (5, 12, 0), "?"), tuple(group))

        group = parse_mm_group(["T-472552.", "0"])
        self.assertEqual(("T", "-", True, ("472552",), (0,), "."), tuple(group))

        group = parse_mm_group(["C+mh"])
        self.assertEqual(("C", "+", False, ("m", "h"), (), ""), tuple(group))


class TestIsChEBI(unittest.TestCase):

    def test_is_chebi(self):
        """ Test detection of ChEBI codes """
        self.assertTrue(is_chebi("12345"))
        self.assertTrue(is_chebi("0"))
        self.assertFalse(is_chebi("m"))
        self.assertFalse(is_chebi(""))
        self.assertFalse(is_chebi(None))
        self.assertFalse(is_chebi("12a45"))
        self.assertFalse(is_chebi("-1"))


class TestValueString(unittest.TestCase):

    def test_value_string(self):
        """ Test human-readable descriptions of calls """
        self.assertEqual("Base modification: 5mC (100%)", value_string("m", 255))
        self.assertEqual("Base modification: Unknown (50%)", value_string("z", 128))
        self.assertEqual("Base modification: 6mA (0%)", value_string("a", 0))
        self.assertEqual("Base modification: Unknown C (50%)", value_string("C", -128))
        self.assertEqual("Base modification: 4mC (20%)", value_string("21839", 51))
        self.assertEqual("Base modification: 76792 (100%)", value_string("76792", 255))

    def test_set_label(self):
        """ Test labels of output sets """
        mod_sets = get_base_modification_sets("C+mh,0;", None, "C")
        self.assertEqual(["5mC", "5hmC"], [k.label() for k in mod_sets])
        self.assertFalse(mod_sets[0].is_chebi())


if __name__ == '__main__':
    unittest.main()
