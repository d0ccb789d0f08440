"""
Building telemetry core for the building-management backend.

Pulls environmental telemetry from the Aranet cloud and motion/presence data
from the Aqara hub cloud, normalizes both into one reading model, and rolls
them up into trend series, electricity summaries and building analytics.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""
