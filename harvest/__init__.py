"""Crawl-queue harvester that fills the product catalog from product pages."""

__version__ = "0.1.0"
