"""Granary — grain marketing signal engine for farm operations.

Granary compares live grain futures and cash prices against each farm
operation's break-even price and raises marketing signals (cash sales,
basis contracts, hedge-to-arrive, accumulator monitoring and inquiry).
Thresholds adapt to each user's historical selling behaviour, signals are
enriched with LLM narrative, and crop-insurance indemnities (RP, YP,
RP-HPE, SCO and ECO) are estimated on demand.
"""

__version__ = "0.1.0"
