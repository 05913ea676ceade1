"""
Collects declaration files and merges them into one Configuration.
"""
import os
from typing import Iterable, List

from rich.console import Console

from converge.detect import detect_format
from converge.errors import ConfigError
from converge.models.node import Configuration
from converge.parsers import template, terraform

console = Console(stderr=True)

_PARSERS = {
    "terraform": terraform.parse_file,
    "template": template.parse_file,
}


def collect_files(paths: Iterable[str]) -> List[str]:
    """Expand directories into file paths."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, dirs, fnames in os.walk(p):
                dirs[:] = sorted(d for d in dirs if not d.startswith("."))
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            raise ConfigError(f"'{p}' does not exist")
    return files


def load_files(file_paths: Iterable[str]) -> Configuration:
    config = Configuration()
    for fp in file_paths:
        fmt = detect_format(fp)
        parser = _PARSERS.get(fmt)
        if parser is None:
            console.print(f"[dim]Skipping unsupported file:[/dim] {fp}")
            continue
        config = config.merge(parser(fp))
    return config


def load_configuration(paths: Iterable[str]) -> Configuration:
    files = collect_files(paths)
    if not files:
        raise ConfigError("no declaration files found")
    return load_files(files)
