"""subclaw: autonomous sub-agent task engine with a liveness watchdog."""

__version__ = "0.1.0"
