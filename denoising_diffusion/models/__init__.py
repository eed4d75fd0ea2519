"""
Reference noise-prediction models
"""

from .conditional_chain import ConditionalChain, ConditionalMLP, TimestepBlock, TimestepConcat

__all__ = ["ConditionalChain", "ConditionalMLP", "TimestepBlock", "TimestepConcat"]
