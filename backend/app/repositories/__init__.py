"""Repository layer for data access.

Repositories encapsulate database operations and provide a clean interface
for CRUD operations on domain objects.
"""

from app.repositories.fhir import Comparison, FhirRepository

__all__ = ["Comparison", "FhirRepository"]
