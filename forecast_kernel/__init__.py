"""
Forecast Kernel

Append-only forecast versioning for project cost breakdowns:
- Baseline line items with 4-level classification
- Immutable, fully materialised forecast versions
- Deterministic snapshot resolution (explicit, excluded, inherited, baseline)
- Typed errors and structured JSON logging
"""

__version__ = "0.1.0"
