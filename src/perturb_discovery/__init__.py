"""Discovery and calibration of perturbation effects in single-cell CRISPR screens."""

__version__ = "0.1.0"
