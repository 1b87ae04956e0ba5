"""HTTP surface of the MelodyMaker service."""
