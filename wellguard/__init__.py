"""
WellGuard Safety Signal Orchestrator
====================================

A Python framework for turning heterogeneous personal-safety signals (mood
self-reports, wearable readings, check-ins, geofence transitions, buddy
concern flags, and risk forecasts) into a uniform risk representation, and
for deciding whether, when, and how urgently to notify a monitored user,
their buddy, or their emergency contacts.

The orchestration layer is poll-based: an external timer calls
``SafetyOrchestrator.run_sweep()`` which advances escalation cases, delivers
due notifications under per-severity rate limits, and runs the read-only
pattern and wellness analyses.

DISCLAIMER: This software is not a medical device and does not diagnose any
condition.  Escalation to emergency contacts is a notification workflow, not
an emergency service.
"""

__version__ = "0.1.0"
