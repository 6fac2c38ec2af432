"""
Scan orchestration and incremental change detection for marketplace listings.
"""
