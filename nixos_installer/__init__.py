"""NixOS machine installer (flake-driven, dry-run capable).

Core design goals:
- Fixed-order pipeline with a visible step counter
- One dry-run gate in front of every destructive disk operation
- Never touch partitions the run does not own (dual-boot safety)
- Cross-check the generated hardware configuration before installing
- Centralized logging
"""

__version__ = "2.0.0"

__all__ = ["__version__"]
