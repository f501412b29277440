"""Cost allocation pipeline: department spend to towers, solutions and business units."""

__version__ = "0.1.0"
