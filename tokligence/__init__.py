"""Tokligence local gateway toolkit.

Provisions and supervises a local Tokligence gateway process and drives
streaming chat sessions against its OpenAI-compatible HTTP surface.
"""

__version__ = "0.1.0"
