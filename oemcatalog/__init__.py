"""OEM parts catalog ingestion: sitemap crawl -> page extraction -> natural-key upserts."""
