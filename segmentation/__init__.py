"""Audience segmentation service."""
