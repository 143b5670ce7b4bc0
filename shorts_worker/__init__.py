"""Worker for the short-video generation pipeline."""
