"""Interval discovery and paged download for capped Flickr photo searches."""

__version__ = "0.1.0"
