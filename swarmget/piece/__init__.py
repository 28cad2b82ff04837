"""Piece selection."""
