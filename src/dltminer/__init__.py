"""DLT web miner: parallel proof-of-work search, block templates and Stratum pool access."""

__version__ = "1.0.0"
