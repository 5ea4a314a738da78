"""Scheduling, EVM bytecode forms and chain-state storage for parallel EVM block execution."""

__version__ = "0.1.0"
__all__ = ["scheduler", "bytecode", "storage", "in_memory", "rpc"]