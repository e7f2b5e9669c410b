"""calbridge: identity resolution between a record registry and a calendar."""

__version__ = "0.1.0"
