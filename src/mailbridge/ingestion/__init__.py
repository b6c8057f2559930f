"""Parsing of raw message downloads."""

from .parser import EmailParser

__all__ = ["EmailParser"]
