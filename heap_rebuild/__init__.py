"""heap_rebuild: scheduled remediation of forwarded-record fragmentation on SQL Server heaps."""

__version__ = "1.2.0"
