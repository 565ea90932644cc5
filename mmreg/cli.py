"""
mmreg CLI entry point

Provides subcommand routing:
  mmreg register - Multi-metric image registration
  mmreg presets  - List configuration presets
"""

import sys
from typing import List, Optional


USAGE = """\
usage: mmreg [-h] [--version] {register,presets} ...

MMREG - Multi-metric multi-resolution image registration

subcommands:
  register     Register a moving image to a fixed image
  presets      List the shipped configuration presets

examples:
  mmreg register --fixed fixed.nii.gz --moving moving.nii.gz -o ./output
  mmreg register --fixed f.nii.gz --moving m.nii.gz --preset multimetric
  mmreg presets
"""

COMMANDS = {"register", "presets"}


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)

    if not argv or argv[0] in ("-h", "--help"):
        print(USAGE)
        return 0

    if argv[0] in ("-V", "--version"):
        print(f"mmreg {_get_version()}")
        return 0

    command = argv[0]
    if command not in COMMANDS:
        print(f"mmreg: unknown command '{command}'")
        print(USAGE)
        return 1

    if command == "register":
        from .main import main as register_main
        return register_main(argv[1:])

    elif command == "presets":
        from .config import list_available_presets
        for name in list_available_presets():
            print(name)
        return 0


def _get_version():
    from . import __version__
    return __version__


if __name__ == "__main__":
    sys.exit(main())
