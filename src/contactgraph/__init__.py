"""Identity resolution and deduplication for canonical companies and people."""
