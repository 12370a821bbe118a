"""
Exception types raised by the simulation and attestation pipeline.

- ConfigurationError: site or settings validation failed at startup.
- DataAbsentError: a digest or Merkle root was requested for a site-day
  with no telemetry rows.
- AttestationError: the external attestation call failed. Only raised
  inside the anchor coordinator, which converts it into a failure result.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations


class ConfigurationError(Exception):
    """Site configuration or settings failed validation."""


class DataAbsentError(LookupError):
    """No telemetry rows exist for the requested site-day."""


class AttestationError(Exception):
    """The attestation service rejected the request or could not be reached."""
