"""Back-office de ventas: cobros y documentos fiscales."""
