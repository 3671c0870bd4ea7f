"""ralphloop - autonomous story loop for code-generation agents."""

from __future__ import annotations

__version__ = "0.1.0"
