"""
IoT solar simulator package.

Generates deterministic PV telemetry for configured sites, aggregates it into
hourly and daily rollups, builds a Merkle digest per site-day and submits the
digest root to an external attestation service.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-001)

TODO:
- None
"""
