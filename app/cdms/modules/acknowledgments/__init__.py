"""
Acknowledgment campaigns: fan an approved document out to an audience and track
per-user read confirmation.
"""
