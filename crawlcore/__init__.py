"""Crawl task orchestration and browser session engine."""

__version__ = "1.0.0"
