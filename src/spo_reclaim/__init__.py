"""
SharePoint Online storage reclamation
Old version pruning and Office image shrinking with resumable batch processing
"""

__version__ = '0.1.0'
