[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gblink"
version = "0.1.0"
description = "Linker for Game Boy object files: section placement, patching, ROM, symbol and map output"
requires-python = ">=3.10"
dependencies = []
keywords = ["game boy", "linker", "gbz80", "rom", "object file", "linker script"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
gblink = "gblink.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["gblink"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
