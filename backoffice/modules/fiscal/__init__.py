"""
Módulo Fiscal - documentos en el proveedor (InvoiceXpress)

- Vista previa y emisión de facturas (FT), facturas-recibo (FR) y recibos (RC)
- Anulación y notas de crédito
- Envío del documento por email
- Sincronización periódica del estado, PDF y QR (Celery)

El proveedor es la fuente de verdad del estado de cada documento; las
columnas locales son una copia que repara el agente de sincronización.
"""
