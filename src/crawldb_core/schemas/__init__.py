"""JSON schemas for crawl db tool configuration files.

- crawldb_config.schema.json: merge, schedule, transform and URL policy settings
"""
