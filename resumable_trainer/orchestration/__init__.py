"""Front door for training runs.

This package provides:
- Trainer configuration (TOML)
- Per-context config resolution and training data preparation
- The single-flight training orchestrator and its progress reporting
"""
