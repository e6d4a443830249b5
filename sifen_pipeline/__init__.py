"""
Motor SIFEN: numeración, armado de DE, firma, lotes, transmisión y consulta.
"""

__version__ = "0.3.0"
