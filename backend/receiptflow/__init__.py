"""Top-level application package for the receipt processing service.

Uploaded PDF receipts are stored, recorded as ``pending`` and handed to a
background pipeline that extracts structured data with a language model
and commits it to the receipt record.  The package contains the database
models, Pydantic schemas, the pipeline stages and coordinator, the
Dramatiq worker tasks and the FastAPI routers.

To run the API locally you can execute:

```bash
uvicorn receiptflow.api.main:app --reload
```

and start a worker with ``dramatiq receiptflow.worker``.  Configuration
values can be overridden using environment variables or a ``.env`` file
at the project root.
"""

__all__: list[str] = []
