"""Adaptive-bitrate ladder worker.

Turns uploaded videos into multi-rendition DASH/HLS packages.
"""
