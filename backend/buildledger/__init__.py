"""Top-level application package for the BuildLedger receipts API.

BuildLedger tracks construction expenses per company: crews photograph
receipts on site, the API stores the original image in an S3-compatible
object store, renders a thumbnail and records the expense against a
job.  It includes database models, Pydantic schemas, the upload
pipeline (key scheme, validation, image processing, storage) and the
API routers.

To run the API locally you can execute:

```bash
uvicorn buildledger.api.main:app --reload --app-dir backend
```

The default configuration uses a local SQLite database stored in
``buildledger.db``.  You can override configuration values using
environment variables or a ``.env`` file at the project root.
"""

__version__ = "1.0.0"

__all__: list[str] = ["__version__"]
