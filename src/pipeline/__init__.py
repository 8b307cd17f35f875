"""
Tiled Upscale Pipeline

Celery workers behind the orchestrator:
1. Tile dispatch - one Replicate prediction per tile per stage
2. Split - re-cut stage outputs into the next stage's sub-grid
3. Stitch - feathered composite into the exact target size
4. Sweep - reconcile stale jobs and expire jobs past the time limit
"""
