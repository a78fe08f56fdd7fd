"""
Domain layer for page conversion.
Provides collaborator interfaces, the job scheduler components and a service
that wires them together, so front-ends (HTTP or others) share one core.
"""

from .errors import ConflictError, ConversionError, ExternalFailure, InternalError, NotFoundError, ValidationError
from .interfaces import DocumentStore, ObjectStore, RasterizeOptions, Rasterizer
from .models import ConversionJob, DocumentRecord, JobStatus, Priority, RasterizeResult
from .service import ConversionService, format_duration
