"""Render engines: deterministic compositor, generative backend and render cache."""
