#!/usr/bin/env python3
"""
droidhorn CLI - Horn clause taint analysis for Dalvik programs.

Commands:
- analyze: compile a program model and report information leaks
- relations: show the allocation sites and local-heap layout of a program

Usage:
    droidhorn analyze app.json                        # Analyse with the built-in Android sources/sinks
    droidhorn analyze app.json --sources-sinks ss.txt # Use a custom sources/sinks file
    droidhorn analyze app.json -f json -o report.json # JSON report
    droidhorn relations app.json                      # Allocation sites and slot ranges

Exit status: 0 no leak, 1 leak found, 2 usage or input error.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from droidhorn import __version__
from droidhorn.analysis.analyzer import Analyzer
from droidhorn.dalvik.loader import load_program
from droidhorn.errors import AnalysisError
from droidhorn.options import DEFAULT_QUERY_TIMEOUT_MS, ENGINES, AnalysisOptions
from droidhorn.specs.android_specs import default_android_spec
from droidhorn.specs.sources_sinks import load_sources_sinks


EXIT_CLEAN = 0
EXIT_LEAK = 1
EXIT_ERROR = 2

logger = logging.getLogger("droidhorn")


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser"""
    parser = argparse.ArgumentParser(
        prog="droidhorn",
        description="droidhorn - Horn clause taint analysis for Dalvik programs",
        epilog="Use 'droidhorn <command> --help' for more information on a specific command.",
    )

    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # === ANALYZE command ===
    analyze_parser = subparsers.add_parser(
        "analyze",
        help="Report information leaks in a program",
        description="Compile a Dalvik program model into Horn clauses and check every sink call."
    )
    analyze_parser.add_argument(
        "program",
        help="Program model (JSON)"
    )
    analyze_parser.add_argument(
        "--sources-sinks",
        help="Sources/sinks file (default: built-in Android table)"
    )
    analyze_parser.add_argument(
        "-n", "--bits",
        type=int,
        default=64,
        help="Bit-vector size (default: 64)"
    )
    analyze_parser.add_argument(
        "-w", "--arrays",
        action="store_true",
        help="Track array indexes"
    )
    analyze_parser.add_argument(
        "--engine",
        default="spacer",
        choices=list(ENGINES),
        help="Fixed-point engine (default: spacer)"
    )
    analyze_parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_QUERY_TIMEOUT_MS,
        help=f"Timeout per query in ms (default: {DEFAULT_QUERY_TIMEOUT_MS})"
    )
    analyze_parser.add_argument(
        "-r", "--max-queries",
        type=int,
        help="Run at most this many queries"
    )
    analyze_parser.add_argument(
        "-l", "--stop-at-first-leak",
        action="store_true",
        help="Stop after the first leak is found"
    )
    analyze_parser.add_argument(
        "-g", "--skip-unknown",
        action="store_true",
        help="Treat calls to unknown methods as no-ops"
    )
    analyze_parser.add_argument(
        "-s", "--sink-methods-heap-only",
        action="store_true",
        help="Keep a local heap only in methods that call a sink"
    )
    analyze_parser.add_argument(
        "--reachability",
        action="store_true",
        help="Emit the local-heap reachability relations"
    )
    analyze_parser.add_argument(
        "-j", "--workers",
        type=int,
        default=1,
        help="Worker threads compiling methods (default: 1)"
    )
    analyze_parser.add_argument(
        "-q", "--precise-results",
        action="store_true",
        help="One query per sink argument register instead of one per call"
    )
    analyze_parser.add_argument(
        "-f", "--format",
        default="text",
        choices=["text", "json"],
        help="Output format (default: text)"
    )
    analyze_parser.add_argument(
        "-o", "--output",
        help="Output file (default: stdout)"
    )
    analyze_parser.add_argument(
        "--dump-smt2",
        metavar="FILE",
        help="Write the rules and queries in SMT-LIB fixed-point format"
    )
    _add_logging_flags(analyze_parser)

    # === RELATIONS command ===
    relations_parser = subparsers.add_parser(
        "relations",
        help="Show allocation sites and the local-heap layout",
        description="Run the pre-pass only and print every allocation site with its slot range."
    )
    relations_parser.add_argument(
        "program",
        help="Program model (JSON)"
    )
    relations_parser.add_argument(
        "-s", "--sink-methods-heap-only",
        action="store_true",
        help="Keep a local heap only in methods that call a sink"
    )
    relations_parser.add_argument(
        "--sources-sinks",
        help="Sources/sinks file (default: built-in Android table)"
    )
    _add_logging_flags(relations_parser)

    return parser


def _add_logging_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log analysis phases"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log per-method progress"
    )


def setup_logging(args) -> None:
    if getattr(args, "debug", False):
        level = logging.DEBUG
    elif getattr(args, "verbose", False):
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load(args):
    """Program model with the requested sources and sinks"""
    if args.sources_sinks:
        spec = load_sources_sinks(args.sources_sinks)
    else:
        spec = default_android_spec()
    return load_program(args.program, spec)


def _options(args) -> AnalysisOptions:
    return AnalysisOptions(
        bitvector_size=args.bits,
        arrays=args.arrays,
        engine=args.engine,
        query_timeout=args.timeout,
        max_queries=args.max_queries,
        stop_at_first_leak=args.stop_at_first_leak,
        skip_unknown=args.skip_unknown,
        sink_methods_heap_only=args.sink_methods_heap_only,
        reachability=args.reachability,
        workers=args.workers,
        verbose_results=args.precise_results,
    ).validate()


# ============================================================================
# ANALYZE Command
# ============================================================================

def cmd_analyze(args) -> int:
    """Execute analyze command"""
    try:
        options = _options(args)
        program = _load(args)
    except (OSError, ValueError, AnalysisError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    analyzer = Analyzer(program, options)
    try:
        analyzer.compile()
        if args.dump_smt2:
            Path(args.dump_smt2).write_text(analyzer.engine.to_smt2())
            logger.info("Wrote %s", args.dump_smt2)
        report = analyzer.analyze(Path(args.program).name)
    except AnalysisError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    output = report.to_json() if args.format == "json" else report.to_text()
    if args.output:
        Path(args.output).write_text(output + "\n")
    else:
        print(output)

    return EXIT_LEAK if report.has_leaks else EXIT_CLEAN


# ============================================================================
# RELATIONS Command
# ============================================================================

def cmd_relations(args) -> int:
    """Execute relations command"""
    try:
        program = _load(args)
        analyzer = Analyzer(program, AnalysisOptions(
            sink_methods_heap_only=args.sink_methods_heap_only))
        analyzer.prepare()
    except (OSError, ValueError, AnalysisError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    allocations = analyzer.allocations
    print(f"{len(allocations)} allocation sites, local heap of {allocations.size} slots")
    for site in allocations:
        fields = "unknown layout" if site.layout is None else f"{site.size} fields"
        print(f"  {site.type_name} #{site.alloc_id}: slots {site.offset}..{site.marker} "
              f"({fields}, marker {site.marker})")
    return EXIT_CLEAN


# ============================================================================
# Main Entry Point
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_CLEAN

    setup_logging(args)

    commands = {
        "analyze": cmd_analyze,
        "relations": cmd_relations,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)
    parser.print_help()
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
