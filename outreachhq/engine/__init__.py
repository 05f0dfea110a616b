"""
Campaign generation and refinement engine.
"""
