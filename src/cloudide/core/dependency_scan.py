"""
Static detection of third-party packages imported by a file set.

The scan is textual: ``require('x')``, ``import ... from 'x'``,
``import 'x'`` and ``import('x')`` with a literal specifier are found;
specifiers computed at runtime are not.
"""

from __future__ import annotations

import re

from collections.abc import Iterable, Mapping
from typing import Protocol, runtime_checkable

from cloudide.core.constants import BUILTIN_MODULE_PREFIX, BUILTIN_MODULES

# Relative ('./x', '../x') and absolute ('/x') specifiers are excluded by the
# first character class.
_SPECIFIER_PATTERN = re.compile(
    r"""(?:require\s*\(\s*|\bfrom\s+|\bimport\s*\(\s*|\bimport\s+)['"]([^'"./][^'"]*)['"]"""
)


@runtime_checkable
class DependencyResolver(Protocol):
    """Turns a file set into the list of packages to install."""

    def extract_modules(self, source: str) -> set[str]: ...

    def resolve(self, files: Mapping[str, str]) -> list[str]: ...


def package_name(specifier: str) -> str:
    """Reduce a module specifier to the installable package name.

    >>> package_name("lodash/fp")
    'lodash'
    >>> package_name("@scope/pkg/sub")
    '@scope/pkg'
    """
    parts = specifier.split("/")
    if specifier.startswith("@") and len(parts) > 1:
        return "/".join(parts[:2])
    return parts[0]


def is_builtin(specifier: str, builtins: Iterable[str] = BUILTIN_MODULES) -> bool:
    if specifier.startswith(BUILTIN_MODULE_PREFIX):
        return True
    return package_name(specifier) in builtins


class RegexDependencyResolver:
    """Single-pass regex scan over every file in the set."""

    def __init__(self, builtins: Iterable[str] = BUILTIN_MODULES) -> None:
        self.builtins = frozenset(builtins)

    def extract_modules(self, source: str) -> set[str]:
        """Package names referenced by one source text, built-ins included."""
        return {package_name(m.group(1)) for m in _SPECIFIER_PATTERN.finditer(source)}

    def resolve(self, files: Mapping[str, str]) -> list[str]:
        """Sorted, de-duplicated external packages referenced anywhere in the set."""
        found: set[str] = set()
        for source in files.values():
            for m in _SPECIFIER_PATTERN.finditer(source):
                specifier = m.group(1)
                if not is_builtin(specifier, self.builtins):
                    found.add(package_name(specifier))
        return sorted(found)
