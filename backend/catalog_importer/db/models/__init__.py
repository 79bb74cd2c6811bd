"""Database models package."""
from catalog_importer.db.models.import_batch import ImportBatch
from catalog_importer.db.models.import_history import ImportHistory
from catalog_importer.db.models.mapping_cache import MappingCacheEntry
from catalog_importer.db.models.product import Product
from catalog_importer.db.models.upload_session import UploadSession

__all__ = ["ImportBatch", "ImportHistory", "MappingCacheEntry", "Product", "UploadSession"]
