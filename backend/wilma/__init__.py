"""Scraping of the Wilma school portal: session, view extractors and pipeline."""
