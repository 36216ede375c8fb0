"""Upload EEG archives to the SEA analysis service and record the SEA Index in FHIR."""

__version__ = "0.1.0"
