"""Transcoding pipeline: quality ladder, bounded encode fan-out,
DASH/HLS packaging, ownership leases and the job driver.
"""
