"""Wrap a foreign command and report its activity."""

from .runner import Runner

__all__ = ["Runner"]
