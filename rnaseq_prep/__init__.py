"""Gene-matrix preparation for the sepsis bulk RNA-seq cohort."""

__version__ = "0.1.0"
