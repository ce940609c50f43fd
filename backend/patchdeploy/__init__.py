"""
PatchDeploy: applies patch packages to live sites with backups, health
monitoring and automatic rollback.
"""

__version__ = "0.1.0"
