"""Reactor-pattern TCP networking: event loops, timers, buffers, servers and clients."""

__version__ = "0.1.0"