# Copyright (c) Syntropy Systems
"""Agent roles, invocation and structured output extraction."""
