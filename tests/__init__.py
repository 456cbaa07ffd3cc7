"""Test suite for Strata.

- Registry semantics on isolated product families
- Layer factory, engine selection and the built-in layers
- Dataset factory and the LevelDB/LMDB round trips (skipped without bindings)
"""
