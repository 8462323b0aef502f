"""Manifest adapters, one per package ecosystem."""

from pkgguard.adapters.base import BaseAdapter
from pkgguard.adapters.npm import NpmAdapter
from pkgguard.adapters.pypi import PyPiAdapter

__all__ = ["BaseAdapter", "NpmAdapter", "PyPiAdapter"]
