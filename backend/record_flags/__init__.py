"""
Record flags - orchestration engine for dynamically configured record flags
"""
__version__ = "0.1.0"
