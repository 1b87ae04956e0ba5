"""Service layer: generation lifecycle, provider clients and fan-out."""
