"""pyinsfem.fem - quadrature, reference bases, mappings and Taylor-Hood values."""
