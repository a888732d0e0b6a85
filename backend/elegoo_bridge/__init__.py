"""
elegoo-bridge — state synchronization bridge for Elegoo SDCP resin printers.
"""

__version__ = "1.0.0"
