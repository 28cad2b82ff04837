"""Piece storage and file layout."""
