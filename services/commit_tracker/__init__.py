"""
Commit Tracker Service for RepoPulse.

This service is responsible for:
- Registering GitHub repositories and collections
- Queueing and running incremental commit syncs
- Recording sync outcomes and publishing sync events
- Serving growth accounting for repositories and collections
"""

__version__ = "1.0.0"
__author__ = "RepoPulse Team"
__description__ = "GitHub commit ingestion and growth accounting service"
