"""Logging, distributed reductions and JAX setup."""
