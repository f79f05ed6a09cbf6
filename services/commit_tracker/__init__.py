"""
Commit Tracker Service.

This service is responsible for:
- Watching Git working trees for new HEAD commits
- Recording each commit exactly once in an append-only tracking log
- Serving cached history, statistics and unpushed state
- Publishing tracking events to subscribers
"""

__version__ = "1.0.0"
__description__ = "Git commit tracking service"
