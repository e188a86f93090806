"""
Verification core: workflow, capture, analysis and persistence.
"""
