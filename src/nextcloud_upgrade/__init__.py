"""
Nextcloud Upgrade - In-place upgrades for self-hosted Nextcloud
"""

__version__ = "0.1.0"
