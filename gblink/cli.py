"""Command-line entry point of the linker."""

from __future__ import annotations

import argparse
import sys
from contextlib import contextmanager
from typing import IO, Iterator, Sequence

from gblink.assign import assign_sections
from gblink.diagnostics import Diagnostics, LinkError
from gblink.objfile import ObjectReader
from gblink.options import LinkOptions, parse_pad_value, parse_scramble_spec
from gblink.output import OutputLayout
from gblink.patch import apply_patches, check_assertions
from gblink.script import LinkerScript, apply_placements
from gblink.section import SectionTable
from gblink.symbol import SymbolTable

_VERSION = "v0.1.0"
_PROGRAM = "rgblink"

USAGE = (
    "Usage: rgblink [-dMtVvwx] [-l script] [-m map_file] [-n sym_file]\n"
    "               [-O overlay_file] [-o out_file] [-p pad_value]\n"
    "               [-S spec] [-s symbol] <file> ...\n"
    "Useful options:\n"
    "    -l, --linkerscript <path>  set the input linker script\n"
    "    -m, --map <path>           set the output map file\n"
    "    -n, --sym <path>           set the output symbol list file\n"
    "    -o, --output <path>        set the output file\n"
    "    -p, --pad <value>          set the value to pad between sections with\n"
    "    -x, --nopad                disable padding of output binary\n"
    "    -V, --version              print RGBLINK version and exits\n"
    "\n"
    "For help, see the rgblink manual page.\n"
)


def version_string() -> str:
    """The version reported by ``--version``."""
    return _VERSION


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        sys.stderr.write(f"error: {message}\n")
        sys.stderr.write(USAGE)
        raise SystemExit(1)


class _Override(argparse.Action):
    """Stores a path, warning when an earlier one is replaced."""

    def __init__(self, option_strings, dest, label: str = "", **kwargs) -> None:
        super().__init__(option_strings, dest, **kwargs)
        self.label = label

    def __call__(self, parser, namespace, values, option_string=None) -> None:
        if getattr(namespace, self.dest) is not None:
            sys.stderr.write(f"warning: Overriding {self.label} {values}\n")
        setattr(namespace, self.dest, values)


class _Version(argparse.Action):
    def __init__(self, option_strings, dest, **kwargs) -> None:
        super().__init__(option_strings, dest, nargs=0, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None) -> None:
        sys.stdout.write(f"{_PROGRAM} {version_string()}\n")
        raise SystemExit(0)


def build_parser() -> argparse.ArgumentParser:
    """The command-line parser, without building any options from it."""
    parser = _Parser(prog=_PROGRAM, add_help=False, usage=USAGE)
    parser.add_argument("-d", "--dmg", dest="dmg", action="store_true")
    parser.add_argument("-l", "--linkerscript", dest="linker_script", action=_Override,
                        label="linkerscript")
    parser.add_argument("-m", "--map", dest="map_file", action=_Override, label="mapfile")
    parser.add_argument("-M", "--no-sym-in-map", dest="no_sym_in_map", action="store_true")
    parser.add_argument("-n", "--sym", dest="sym_file", action=_Override, label="symfile")
    parser.add_argument("-O", "--overlay", dest="overlay_file", action=_Override,
                        label="overlay file")
    parser.add_argument("-o", "--output", dest="output_file", action=_Override,
                        label="output file")
    parser.add_argument("-p", "--pad", dest="pad", action="append", default=None)
    parser.add_argument("-S", "--scramble", dest="scramble", action="append", default=None)
    parser.add_argument("-s", "--smart", dest="smart", action="append", default=None)
    parser.add_argument("-t", "--tiny", dest="tiny", action="store_true")
    parser.add_argument("-V", "--version", action=_Version)
    parser.add_argument("-v", "--verbose", dest="verbose", action="store_true")
    parser.add_argument("-w", "--wramx", dest="wramx", action="store_true")
    parser.add_argument("-x", "--nopad", dest="nopad", action="store_true")
    parser.add_argument("inputs", nargs="*")
    return parser


def _make_options(args: argparse.Namespace, diagnostics: Diagnostics) -> LinkOptions:
    options = LinkOptions(
        is_dmg=args.dmg,
        linker_script=args.linker_script,
        map_file=args.map_file,
        no_sym_in_map=args.no_sym_in_map,
        sym_file=args.sym_file,
        overlay_file=args.overlay_file,
        output_file=args.output_file,
        is_32k=args.tiny or args.nopad,
        verbose=args.verbose,
        is_wra0=args.wramx or args.dmg,
        disable_padding=args.nopad,
    )
    for text in args.pad or ():
        options.pad_value = parse_pad_value(text, diagnostics)
    for spec in args.scramble or ():
        parse_scramble_spec(spec, options, diagnostics)
    for _ in args.smart or ():
        diagnostics.warning(None, 0, "Nobody has any idea what `-s` does")
    return options


@contextmanager
def _open_file(path: str | None, mode: str) -> Iterator[IO | None]:
    """Open a file, "-" meaning a standard stream; None yields None."""
    if path is None:
        yield None
        return
    binary = "b" in mode
    if path == "-":
        std = sys.stdin if "r" in mode else sys.stdout
        yield std.buffer if binary else std
        return
    extra = {} if binary else {"encoding": "utf-8", "errors": "surrogateescape"}
    if not binary and "r" in mode:
        extra["newline"] = ""
    try:
        handle = open(path, mode, **extra)
    except OSError as exc:
        raise LinkError(f'Could not open file "{path}": {exc.strerror}') from exc
    with handle:
        yield handle


def link(options: LinkOptions, inputs: Sequence[str],
         diagnostics: Diagnostics) -> OutputLayout:
    """Run the whole link and write the requested files; return the layout."""
    def verbose(message: str) -> None:
        if options.verbose:
            diagnostics.stream.write(message + "\n")

    memory_map = options.memory_map()
    sections = SectionTable()
    symbols = SymbolTable()
    reader = ObjectReader(sections, symbols, diagnostics, verbose=options.verbose)
    for path in inputs:
        reader.read_file(path)

    if options.linker_script is not None:
        verbose("Reading linker script...")
        with _open_file(options.linker_script, "r") as stream:
            script = LinkerScript(stream, options.linker_script, sections, memory_map)
            apply_placements(script, diagnostics)
        # Errors here may leave sections in an invalid state
        diagnostics.raise_if_errors()

    sections.sanity_check(memory_map, diagnostics)
    diagnostics.raise_if_errors()

    layout = OutputLayout(memory_map)
    verbose("Beginning assignment...")
    assign_sections(sections, layout, memory_map, options)
    verbose("Checking assertions...")
    check_assertions(reader.assertions, sections, symbols, diagnostics)
    apply_patches(sections, symbols, diagnostics)
    diagnostics.raise_if_errors()

    with _open_file(options.output_file, "wb") as output, \
            _open_file(options.overlay_file, "rb") as overlay:
        layout.write_rom(output, overlay, options.pad_value, options.disable_padding)

    if options.sym_file is not None or options.map_file is not None:
        with _open_file(options.sym_file, "w") as sym_out, \
                _open_file(options.map_file, "w") as map_out:
            if sym_out is not None:
                layout.write_sym(sym_out)
            if map_out is not None:
                layout.write_map(map_out, options.no_sym_in_map)
    return layout


def main(argv: Sequence[str] | None = None) -> int:
    """Link the object files named on the command line; return the exit status."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 1

    if not args.inputs:
        sys.stderr.write("FATAL: no input files\n")
        sys.stderr.write(USAGE)
        return 1

    diagnostics = Diagnostics()
    options = _make_options(args, diagnostics)
    try:
        link(options, args.inputs, diagnostics)
    except LinkError as exc:
        sys.stderr.write(f"FATAL: {exc}\n")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())