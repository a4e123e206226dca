"""Organization-wide security service modules."""
