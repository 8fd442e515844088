"""Autonomous iteration loop for stateless CLI coding agents."""

__version__ = "0.1.0"
