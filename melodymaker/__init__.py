"""MelodyMaker: reference-driven music generation service."""
