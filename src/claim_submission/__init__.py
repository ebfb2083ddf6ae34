"""Clinical claim assembly and FHIR submission."""

__version__ = "0.1.0"
