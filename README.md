# gblink

`gblink` links Game Boy object files into a ROM image. It reads binary
object files (revision 9, starting with the `RGB9` magic), merges union
and fragment sections, places every section in memory, resolves exported
symbols, fills in patches and checks assertions, then writes the ROM and,
on request, a symbol file and a map file.

## Installation

```
pip install .
```

For the tests:

```
pip install .[test]
pytest
```

## Command line

```
gblink [-dMtVvwx] [-l script] [-m map_file] [-n sym_file]
       [-O overlay_file] [-o out_file] [-p pad_value]
       [-S spec] [-s symbol] <file> ...
```

| Option | Meaning |
| --- | --- |
| `-l`, `--linkerscript <path>` | read section placements from a linker script |
| `-m`, `--map <path>` | write a map file |
| `-M`, `--no-sym-in-map` | leave symbols out of the map file |
| `-n`, `--sym <path>` | write a symbol file |
| `-O`, `--overlay <path>` | take unused ROM bytes from an overlay file; every section must then have a fixed bank and address |
| `-o`, `--output <path>` | write the ROM to this file |
| `-p`, `--pad <value>` | byte used to fill gaps between sections (0 to 0xFF, decimal, octal or `0x` hex; default 0) |
| `-S`, `--scramble <spec>` | spread sections over banks, e.g. `romx=64,wramx` |
| `-d`, `--dmg` | DMG mode: no VRAM bank 1, implies `-w` |
| `-t`, `--tiny` | 32 KiB ROM0 without ROMX banks |
| `-w`, `--wramx` | make WRAM0 span the whole 8 KiB |
| `-x`, `--nopad` | do not pad the end of the output (implies `-t`) |
| `-s`, `--smart <symbol>` | accepted, only prints a warning |
| `-v`, `--verbose` | report progress on standard error |
| `-V`, `--version` | print the version and exit |

For `-o`, `-n`, `-m`, `-l` and `-O`, a path of `-` means standard output
or standard input; an input file of `-` is read from standard input.
Giving one of these path options twice prints a warning and keeps the
later one.

The `-S` spec is a comma-separated list of `region=limit` entries.
Region names are `romx`, `sram` and `wramx`, matched case-insensitively
and by prefix. Only `wramx` may leave out its limit, which then defaults
to 7. A limit at or above the region's maximum (65535, 255, 7) is
reported and clamped.

Example:

```
gblink -o game.gb -n game.sym -m game.map main.o engine.o
```

Diagnostics go to standard error as `warning:`, `error:` or `FATAL:`
lines; the exit status is 0 on success and 1 on any error.

## Linker scripts

A linker script places sections explicitly:

```
; comments start with a semicolon
ROM0
    "Header"
    ORG $150
    "Entry"
ROMX 2
    ALIGN 8
    "Tables"
INCLUDE "more.link"
```

A memory region name (`ROM0`, `ROMX`, `VRAM`, `SRAM`, `WRAM0`, `WRAMX`,
`OAM`, `HRAM`) followed by a bank number selects where the following
sections go; the bank number may be left out for regions with a single
bank. `ORG` sets the current address and `ALIGN n` rounds it up to a
multiple of 2^n; neither may move backwards. A quoted string names a
section, placed at the current address. Numbers are decimal, or
hexadecimal with a leading `$`. Strings accept the escapes `\n`, `\r`,
`\t`, `\\` and `\"`. Keywords are case-insensitive.

## Using it as a library

```python
from gblink.cli import link
from gblink.diagnostics import Diagnostics, LinkError
from gblink.options import LinkOptions

options = LinkOptions(output_file="game.gb", sym_file="game.sym")
try:
    layout = link(options, ["main.o"], Diagnostics())
except LinkError as exc:
    print("link failed:", exc)
```

The pieces can also be used one by one:

- `gblink.objfile.ObjectReader` reads object files into a
  `gblink.section.SectionTable` and a `gblink.symbol.SymbolTable`.
- `gblink.script.LinkerScript` iterates over `SectionPlacement`s, and
  `gblink.script.apply_placements` fixes sections accordingly.
- `gblink.assign.assign_sections` and `SectionAssigner` place sections
  with a first-fit decreasing strategy, most constrained first.
- `gblink.patch.apply_patches` and `check_assertions` evaluate RPN
  expressions with `RPNEvaluator`.
- `gblink.output.OutputLayout` writes the ROM (`write_rom`), the symbol
  file (`write_sym`) and the map file (`write_map`);
  `gblink.output.format_sym_name` renders names the way the symbol file
  writes them.
- `gblink.opmath` holds the 32-bit integer operators used by patch
  expressions, and `gblink.linkdefs.MemoryMap` describes the memory
  regions for a given set of modes.

## What it does not do

- Only binary object files of revision 9 are read. Text object files in
  the SDCC format are not supported; any input not starting with `RGB9`
  is rejected as not being an object file.
- There is no assembler here: object files must come from elsewhere.