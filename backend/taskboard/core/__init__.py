"""Core configuration, logging, time, and error primitives."""
