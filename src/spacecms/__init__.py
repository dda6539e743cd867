"""Headless CMS core: stories, components, versions, locks and translations."""

__version__ = "0.1.0"
