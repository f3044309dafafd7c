"""Core library: extraction, translation, emission and dependency resolution."""
