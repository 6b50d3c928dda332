"""hot-keeper: hot reload a running ASGI server while keeping chosen values.

Application code only needs the persistent store:

    from hot_keeper import keep, kept
"""

from hot_keeper.keeper import keep, kept

__version__ = "1.0.0"

__all__ = ["__version__", "keep", "kept"]
