"""
Concrete memory backend implementations.
"""
