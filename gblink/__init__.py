"""Linker for Game Boy object files: placement, patching, ROM, symbol and map output."""

__version__ = "0.1.0"