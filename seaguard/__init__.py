"""
seaguard — ghost fishing-net monitoring core.

Packages:
    seaguard.shared         — domain models, settings, geodesy helpers
    seaguard.telemetry      — ping ingestion, telemetry store, feature extraction
    seaguard.control_plane  — oracle client, classification, net lifecycle,
                              alerts, drift forecasting, fleet scheduling

Run the monitoring loop with `python -m seaguard`.
"""

__version__ = "0.1.0"
