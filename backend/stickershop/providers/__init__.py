"""
Outbound integrations for the sticker pipeline.

- replicate: hosted image generation (async prediction jobs)
- tmpfiles: temporary public file host for images too big to send inline
- print_partner: variant catalog and print order submission
"""

from stickershop.providers.replicate import (
    ReplicateClient,
    first_output_url,
    TERMINAL_STATUSES,
)

from stickershop.providers.tmpfiles import (
    TmpFilesClient,
    to_direct_download_url,
)

from stickershop.providers.print_partner import (
    PrintPartnerClient,
    MAX_CATALOG_BYTES,
    MAX_CATALOG_PAGES,
)

__all__ = [
    # Generation
    "ReplicateClient",
    "first_output_url",
    "TERMINAL_STATUSES",
    # File host
    "TmpFilesClient",
    "to_direct_download_url",
    # Print partner
    "PrintPartnerClient",
    "MAX_CATALOG_BYTES",
    "MAX_CATALOG_PAGES",
]
