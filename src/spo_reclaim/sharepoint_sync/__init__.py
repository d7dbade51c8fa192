"""
SharePoint module
Graph-backed document store, candidate discovery and batch orchestration
"""

from .batch_pipeline import BatchOrchestrator
from .discovery import DiscoveryFilter, DiscoveryProvider, build_discovery
from .sharepoint_client import DocumentStore, GraphDocumentStore, ListingPage

__all__ = [
    'BatchOrchestrator',
    'DiscoveryFilter',
    'DiscoveryProvider',
    'DocumentStore',
    'GraphDocumentStore',
    'ListingPage',
    'build_discovery'
]
