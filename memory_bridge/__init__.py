"""
Memory Bridge: relational storage and batched migration for agent memory entries.
"""

__version__ = "0.1.0"
