"""Costing kernel: persistence, logging, errors and shared primitives."""
