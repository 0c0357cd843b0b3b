"""Keeping cached state honest against the live repository."""
