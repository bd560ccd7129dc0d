# Copyright (c) Syntropy Systems
"""Parallel experiments in isolated worktrees, folded back into one store."""
