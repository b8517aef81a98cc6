"""Argument parsing shared by the ``webedt-*`` commands."""

from __future__ import annotations

import argparse

from webedt import __version__


def base_parser(name: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=name, description=description)
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", default=None, help="Instance config file merged over config/defaults.yaml")
    return parser
