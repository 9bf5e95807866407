"""JAX configuration: 64-bit precision for exact Jacobian-vector products."""

import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)


__all__ = ['jax', 'jnp']
