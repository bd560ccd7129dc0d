# Copyright (c) Syntropy Systems
"""CLI module for conclave."""
