"""
Garden City Design

Replication pipeline for the Garden City Design (GCD) index: street-layout
geometry of US neighborhoods (Census block groups) summarized into a single
index, merged with outcomes, and analyzed with OLS, IV, and IPW designs.

Core modules:
    - paths: Canonical root and path resolution
    - logging_utils: JSONL structured logging
    - io_utils: Atomic writes and readers (Parquet, CSV, Stata, YAML)
    - schemas: Schema validation for pipeline tables
    - qa: Quality assurance checks (keys, bounds, ranges, merges)
    - hashing: Input/config hashing and metadata sidecars
    - street_features: Per-neighborhood street geometry features
    - gcd_index: Index construction and treatment indicators
    - geography: Geographic keys, centroids, distances, vintage
    - assembly: Source merges into the analysis panel
    - estimation: OLS, IV/2SLS and probit IPW batteries
    - validation: Historical validation samples
"""

__version__ = "0.1.0"
__author__ = "Garden City Design Replication Team"
