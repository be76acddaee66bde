"""Service layer: publishing, matching and webhook delivery."""
