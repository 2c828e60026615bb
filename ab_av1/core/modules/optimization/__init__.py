"""Sample-encode pipeline, cache and crf search."""
