"""Worker modules.

- transcoding: rendition ladder, encode fan-out, packaging, job driver
- job: retry and backoff policy shared by job sources
"""
