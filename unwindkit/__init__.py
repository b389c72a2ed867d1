"""x86_64 stack unwinding: rules, rule caching, instruction analysis and frame iteration."""

__version__ = "0.14.0"