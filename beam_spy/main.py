"""Command line interface of beam-spy.

Examples::

    beam-spy info _build/dev/lib/app/ebin/Elixir.App.beam
    beam-spy info lists
    beam-spy chunks Elixir.App.beam --raw LitT
    beam-spy atoms App --filter re:^handle_
    beam-spy exports App --plain
    beam-spy imports App --group
    beam-spy disasm App --function 'handle_*' --source
    beam-spy callgraph App --format dot | dot -Tsvg > app.svg

Every command returns 0 on success, 1 when the BEAM file or the request
is at fault (bad container, unknown module, missing chunk) and 2 when no
command is given or the file system refuses.  ``python -m beam_spy``
runs the same :func:`main`.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import textwrap
from dataclasses import replace
from typing import Any, Optional, Sequence

from beam_spy import __version__, render, textfmt
from beam_spy.beam_file import BeamFile
from beam_spy.callgraph import build_callgraph
from beam_spy.config import DisasmConfig
from beam_spy.disasm import tokenize
from beam_spy.errors import BeamSpyError, ChunkNotFoundError, SourceUnavailableError
from beam_spy.filter import apply_filter, filter_functions
from beam_spy.resolver import resolve
from beam_spy.source import source_for_beam

_log = logging.getLogger("beam_spy")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INFRA = 2
EXIT_INTERRUPTED = 130

LOG_FORMAT = "%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s"

_VERBOSITY_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)

_cli_handler: Optional[logging.Handler] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbosity: int) -> None:
    """Attach one stderr handler to the ``beam_spy`` logger.

    ``-v`` selects INFO and ``-vv`` or more DEBUG.  Calling this again
    swaps the handler instead of stacking a second one.
    """
    global _cli_handler
    level = _VERBOSITY_LEVELS[min(verbosity, len(_VERBOSITY_LEVELS) - 1)]
    logger = logging.getLogger("beam_spy")
    if _cli_handler is not None:
        logger.removeHandler(_cli_handler)
    _cli_handler = logging.StreamHandler(sys.stderr)
    _cli_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    logger.addHandler(_cli_handler)
    logger.setLevel(level)

def _config(args: argparse.Namespace) -> DisasmConfig:
    """Environment config with command-line overrides applied."""
    config = DisasmConfig.from_env()
    if getattr(args, "path", None):
        config = replace(config, extra_paths=list(args.path) + list(config.extra_paths))
    if getattr(args, "truncate", None) is not None:
        config = replace(config, truncate_limit=args.truncate)
    return config


def _load(args: argparse.Namespace, config: DisasmConfig) -> BeamFile:
    path = resolve(args.target, config.extra_paths)
    _log.info("Loading %s", path)
    return BeamFile.from_path(path)


def _emit(text: str) -> None:
    sys.stdout.write(text)
    if not text.endswith("\n"):
        sys.stdout.write("\n")


def _emit_json(data: Any) -> None:
    _emit(textfmt.to_json(data))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_info(args: argparse.Namespace) -> int:
    beam = _load(args, _config(args))
    data = render.info_data(beam)
    if args.format == "json":
        _emit_json(data)
    else:
        _emit(render.render_info(data))
    return EXIT_OK


def cmd_chunks(args: argparse.Namespace) -> int:
    beam = _load(args, _config(args))
    if args.raw:
        data = beam.chunk(args.raw)
        if data is None:
            raise ChunkNotFoundError(args.raw)
        _emit(render.render_raw_chunk(args.raw, data))
        return EXIT_OK
    data = render.chunks_data(beam)
    if args.format == "json":
        _emit_json(data)
    else:
        _emit(render.render_chunks(data))
    return EXIT_OK


def cmd_atoms(args: argparse.Namespace) -> int:
    beam = _load(args, _config(args))
    atoms = [str(a) for a in apply_filter(beam.atoms, args.filter)]
    if args.format == "json":
        _emit_json(atoms)
    else:
        _emit(render.render_atoms(atoms))
    return EXIT_OK


def cmd_exports(args: argparse.Namespace) -> int:
    beam = _load(args, _config(args))
    exports = render.sorted_exports(
        apply_filter(beam.exports, args.filter, key=lambda e: e.function)
    )
    if args.format == "json":
        _emit_json(render.exports_json(exports))
    else:
        _emit(render.render_exports(exports, plain=args.plain))
    return EXIT_OK


def cmd_imports(args: argparse.Namespace) -> int:
    beam = _load(args, _config(args))
    imports = render.sorted_imports(
        apply_filter(beam.imports, args.filter, key=lambda i: i.function)
    )
    if args.format == "json":
        _emit_json(render.imports_json(imports))
    else:
        _emit(render.render_imports(imports, group=args.group))
    return EXIT_OK


def cmd_disasm(args: argparse.Namespace) -> int:
    config = _config(args)
    beam = _load(args, config)
    functions = filter_functions(tokenize(beam, config=config), args.function)
    _log.info("Disassembled %d function(s)", len(functions))

    if args.format == "json":
        _emit_json(render.disasm_json(beam.module, beam.exports, functions))
        return EXIT_OK

    source_requested = args.source or args.source_path is not None
    source_lines = source_kind = None
    if source_requested:
        try:
            source_lines, source_kind, source_path = source_for_beam(beam, args.source_path)
            _log.info("Source: %s", source_path or "reconstructed from debug info")
        except SourceUnavailableError as exc:
            if args.source_path is not None:
                raise
            _log.warning("%s; showing bytecode only", exc)

    _emit(render.render_disasm_text(
        beam.module,
        beam.exports,
        functions,
        line_table=beam.line_table,
        source_lines=source_lines,
        source_kind=source_kind,
        source_requested=source_requested,
        config=config,
    ))
    return EXIT_OK


def cmd_callgraph(args: argparse.Namespace) -> int:
    config = _config(args)
    beam = _load(args, config)
    graph = build_callgraph(beam.module, tokenize(beam, config=config))
    _log.info("Call graph: %d nodes, %d edges", len(graph.nodes), len(graph.edges))
    if args.format == "json":
        _emit_json(graph.to_dict())
    elif args.format == "dot":
        _emit(graph.to_dot())
    else:
        _emit(graph.to_text())
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="beam-spy",
        description="Inspect and disassemble BEAM (.beam) object files.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            TARGET is a path to a .beam file or a module name.  Names are
            looked up in the current directory, the enclosing Mix
            project's _build, --path directories and ERL_LIBS.

            Filters: re:PATTERN (regex), glob:PATTERN, or a plain
            case-insensitive substring.
        """),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v INFO, -vv DEBUG).",
    )

    subparsers = parser.add_subparsers(dest="command", title="commands", metavar="<command>")

    # options every command takes
    def _add_target_args(p: argparse.ArgumentParser, formats: Sequence[str] = ("text", "json")) -> None:
        p.add_argument(
            "target",
            metavar="TARGET",
            help="Path to a .beam file or a module name.",
        )
        p.add_argument(
            "-f", "--format",
            choices=list(formats),
            default="text",
            help="Output format (default: text).",
        )
        p.add_argument(
            "-P", "--path",
            action="append",
            default=[],
            metavar="DIR",
            help="Extra directory to search for modules (repeatable).",
        )

    def _add_filter_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--filter",
            default=None,
            metavar="PATTERN",
            help="Only show names matching PATTERN.",
        )

    # --- info --------------------------------------------------------------
    p_info = subparsers.add_parser(
        "info",
        help="Show a module summary.",
        description="Module name, source file, compile time, MD5 and table sizes.",
    )
    _add_target_args(p_info)
    p_info.set_defaults(func=cmd_info)

    # --- chunks ------------------------------------------------------------
    p_chunks = subparsers.add_parser(
        "chunks",
        help="List the chunks of a BEAM file.",
        description="List chunk ids, descriptions and sizes, or hex-dump one chunk.",
    )
    _add_target_args(p_chunks)
    p_chunks.add_argument(
        "--raw",
        default=None,
        metavar="ID",
        help="Hex-dump the chunk with this id (e.g. LitT).",
    )
    p_chunks.set_defaults(func=cmd_chunks)

    # --- atoms -------------------------------------------------------------
    p_atoms = subparsers.add_parser(
        "atoms",
        help="List the atom table.",
    )
    _add_target_args(p_atoms)
    _add_filter_arg(p_atoms)
    p_atoms.set_defaults(func=cmd_atoms)

    # --- exports -----------------------------------------------------------
    p_exports = subparsers.add_parser(
        "exports",
        help="List exported functions.",
    )
    _add_target_args(p_exports)
    _add_filter_arg(p_exports)
    p_exports.add_argument(
        "--plain",
        action="store_true",
        help="One name/arity per line.",
    )
    p_exports.set_defaults(func=cmd_exports)

    # --- imports -----------------------------------------------------------
    p_imports = subparsers.add_parser(
        "imports",
        help="List imported functions.",
    )
    _add_target_args(p_imports)
    _add_filter_arg(p_imports)
    p_imports.add_argument(
        "--group",
        action="store_true",
        help="Group imports by module.",
    )
    p_imports.set_defaults(func=cmd_imports)

    # --- disasm ------------------------------------------------------------
    p_disasm = subparsers.add_parser(
        "disasm",
        help="Disassemble the Code chunk.",
        description=(
            "Disassemble every function, or those selected with --function "
            "(name/arity, a * glob, or a substring of the name)."
        ),
    )
    _add_target_args(p_disasm)
    p_disasm.add_argument(
        "--function",
        default=None,
        metavar="F",
        help="Only disassemble functions matching F.",
    )
    p_disasm.add_argument(
        "-s", "--source",
        action="store_true",
        help="Interleave source lines (file or reconstructed from debug info).",
    )
    p_disasm.add_argument(
        "--source-path",
        default=None,
        metavar="FILE",
        help="Read source from FILE instead of the recorded path.",
    )
    p_disasm.add_argument(
        "--truncate",
        type=int,
        default=None,
        metavar="N",
        help="Truncate long operands after N characters (default: 80).",
    )
    p_disasm.set_defaults(func=cmd_disasm)

    # --- callgraph ---------------------------------------------------------
    p_callgraph = subparsers.add_parser(
        "callgraph",
        help="Show the static call graph.",
        description="Calls found in the bytecode; dynamic calls are not followed.",
    )
    _add_target_args(p_callgraph, formats=("text", "json", "dot"))
    p_callgraph.set_defaults(func=cmd_callgraph)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _silence_stdout() -> None:
    # the reader went away (``| head``); keep the interpreter's final flush quiet
    null_fd = os.open(os.devnull, os.O_WRONLY)
    os.dup2(null_fd, sys.stdout.fileno())


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse *argv* (``sys.argv[1:]`` when None), run the chosen command
    and return its exit status."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    command = getattr(args, "func", None)
    if command is None:
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return command(args)
    except BeamSpyError as exc:
        _log.debug("%s: %s", exc.code.value, exc, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except BrokenPipeError:
        _silence_stdout()
        return EXIT_OK
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INFRA
    except KeyboardInterrupt:
        _log.info("interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
