"""Services package - abuse gate and its collaborators."""
