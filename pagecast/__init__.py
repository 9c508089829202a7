"""PDF book to narrated audio service.

This package contains modules that implement a FastAPI based service for
uploading PDF books, extracting their text page by page with OCR,
synthesizing narrated audio one chunk at a time and streaming those
chunks back to listeners while later chunks are still being produced.

The modules in this package are:

* ``db.py`` – Functions for creating and interacting with the SQLite
  database that stores books, chunks and likes. The chunk table is the
  single source of truth for pipeline state.

* ``pipeline.py`` – The pipeline controller. It drives every chunk
  through OCR and speech synthesis, persists each transition and
  materializes the next chunk on demand.

* ``notifier.py`` – Progress reporting. A per-upload event stream and
  per-book change subscriptions, both rendered as server-sent events.

* ``playback.py`` – A listening session that walks the ready chunks and
  asks for more before it runs out.

* ``ocr.py``, ``tts.py``, ``blobstore.py`` and ``slicing.py`` – Adapters
  for the OCR engine, the speech engine, binary object storage and PDF
  page slicing.

* ``auth.py`` – Principals and the single authorization decision used
  by every mutating operation.

* ``search.py`` – Keyword search over the public library.

* ``main.py`` – The FastAPI application and its HTTP endpoints.

The service is designed to run on Vercel or any ASGI server. See the
top level ``main.py`` for the entry point.
"""
