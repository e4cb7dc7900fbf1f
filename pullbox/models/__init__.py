"""
Database models package.
All models are exported here for easy import.
"""
from pullbox.models.credential import OwnerCredential
from pullbox.models.collection import Collection

__all__ = ["OwnerCredential", "Collection"]
