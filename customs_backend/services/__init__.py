"""
Service layer helpers for the Customs Desk backend API.

Modules:
    data_layer  - Declaration store (sqlite) and query filter builder
    sync        - Sync ingest: shared-secret auth, batch validation, GUID extraction
    tickets     - Ticket lifecycle (NEW -> PENDING -> CREATED | FAILED)
    odoo        - Odoo helpdesk XML-RPC client
    documents   - JSON document store (local folder or Google Cloud Storage)
    principals  - Fiscal-representation principal list
    tracking    - MRN tracking history
    reporting   - Performance analytics over externally supplied daily metrics
"""
