"""Multi-carrier rate shopping and shipment booking engine."""

__version__ = "1.0.0"
