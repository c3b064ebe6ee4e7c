"""domainedge - custom domains for hosted sites.

Two halves:
- a DNS-verified lifecycle for attaching a tenant-owned domain to a site
  (``domainedge.domains``)
- an edge proxy that forwards customer-domain traffic to the origin
  (``domainedge.server``)
"""

__version__ = "0.1.0"
