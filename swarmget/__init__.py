"""swarmget - peer-to-peer content transfer engine."""

from __future__ import annotations

__version__ = "0.1.0"
