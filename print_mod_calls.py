import argparse
import logging
import sys
from modBAM_tools_additional import ModBamRecordProcessor, mod_sets_to_table, FILTER_OPTIONS, \
    MOD_TABLE_COLUMNS, SUMMARY_COLUMNS


def print_mod_calls(lines, filter_option="all", summary=False, threshold=0.5, output=sys.stdout):
    """ Print modification calls of modBAM records in SAM text format as a tab-separated table

    Args:
        lines (iterable of str): lines of a SAM file, header lines are skipped
        filter_option (str): (default "all") see filter_modification_sets
        summary (bool): (default False) print modified/unmodified counts per read and modification instead of calls
        threshold (float): (default 0.5) probability at or above which a call is counted as modified
        output (file-like): (default stdout) destination

    Returns:
        None
    """
    mod_bam_parser = ModBamRecordProcessor(filter_option)

    print("\t".join(SUMMARY_COLUMNS if summary else MOD_TABLE_COLUMNS), file=output)

    for line in lines:

        if line.startswith("@") or not line.strip():
            continue

        mod_bam_parser.process_modbam_line(line)

        if summary:
            df = mod_bam_parser.count_bases(threshold)
        elif mod_bam_parser.has_data():
            df = mod_sets_to_table(mod_bam_parser.mod_sets, mod_bam_parser.read_id,
                                   mod_bam_parser.ref_positions, mod_bam_parser.ref_strand())
        else:
            continue

        if not df.empty:
            df.to_csv(output, sep="\t", index=False, header=False)


if __name__ == "__main__":

    desc = """    Print base modification calls in modBAM records as a table.

    Input: Pipe in records in SAM text format, e.g. the output of samtools view.

    Output is a tab-separated table to stdout with one row per call:
    read id, position along the read sequence as stored in the record,
    reference position (-1 if not aligned), reference strand,
    modification strand, canonical base, modification code,
    modification probability, and a label such as
    'Base modification: 5mC (98%)'.

    Sample usage:
        samtools view sample.bam | python <programName.py>
        samtools view sample.bam chr1:1000-2000 | python <programName.py> --filter 5mC --summary

    NOTE: * Reads on the reverse strand are handled using the flag column.
          * Both MM/ML and the older Mm/Ml tag names are recognized.
    """

    # get options
    parser = argparse.ArgumentParser(description=desc,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('--filter', type=str, required=False, choices=FILTER_OPTIONS,
                        help='(default: all) show all modifications, only 5mC, or any modification of C',
                        default='all')
    parser.add_argument('--summary', required=False,
                        action='store_true',
                        help='(optional) print counts of modified and unmodified calls per read and modification',
                        default=False)
    parser.add_argument('--threshold', type=float, required=False,
                        help='(default: 0.5) probability at or above (below) which a call is modified (unmodified),'
                             ' used with --summary',
                        default=0.5)
    parser.add_argument('--verbose', required=False,
                        action='store_true',
                        help='(optional) print debug messages to stderr',
                        default=False)

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    # ensure data is piped in
    if sys.stdin.isatty():
        parser.print_help(sys.stdout)
        raise NotImplementedError("Do not run interactively. Pipe in inputs.")

    print_mod_calls(sys.stdin, args.filter, args.summary, args.threshold)
