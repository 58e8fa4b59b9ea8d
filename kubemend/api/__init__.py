"""KubeMend REST API."""

from __future__ import annotations

from kubemend.api.app import create_app

__all__ = ["create_app"]
