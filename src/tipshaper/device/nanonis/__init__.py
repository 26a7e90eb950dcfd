"""Nanonis SPM controller: binary control protocol and TCP logger stream."""

from .client import NanonisClient, ScanSpeed
from .stream import SignalFrame, TCPLoggerStream

__all__ = ["NanonisClient", "ScanSpeed", "SignalFrame", "TCPLoggerStream"]
