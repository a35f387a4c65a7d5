"""
Approval workflows: sequential or parallel sign-off on a draft document.
"""
