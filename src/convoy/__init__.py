"""Convoy — dependency-aware fleet runner for agent issue pipelines."""

__version__ = "0.1.0"
