"""erpsync - bidirectional sync orchestration between a local content store and a remote ERP"""

__version__ = "1.0.0"
