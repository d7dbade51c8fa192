"""
Per-item transformers: version pruning and image shrinking
"""

from .asset_shrinker import AssetShrinker, shrink_package
from .base import ItemTransformer
from .upload import Uploader, default_strategies
from .version_pruner import VersionPruner, select_versions_to_delete

__all__ = [
    'AssetShrinker',
    'ItemTransformer',
    'Uploader',
    'VersionPruner',
    'default_strategies',
    'select_versions_to_delete',
    'shrink_package'
]
