"""
Tech Pack Render Backend - document rendering service for Tech Packs

This package turns Tech Pack snapshots (article metadata, bill of materials,
measurement charts, how-to-measure steps, colorways and notes) into
paginated, print-ready PDFs and page previews.

Key Components:
    - layout: page planning under per-block row thresholds
    - overlay: lifecycle and brand watermarks, logo resolution
    - render_pool: bounded pool of headless Chromium renderers
    - cache: artifact cache with invalidation-first ordering
    - admission: per-caller request budgets
    - pipeline: generate, preview, describe, bulk_generate, on_document_mutated
    - job_manager: background bulk jobs with zip archives and S3 upload
    - main: FastAPI application and HTTP endpoints

Usage:
    Run the API server with:
        uvicorn techpack_render_backend.main:app --host 0.0.0.0 --port 8000
"""
