# soc2_agent/__init__.py

"""SOC 2 compliance agent: pattern + semantic violation detection and fix generation."""

__version__ = "0.1.0"
