"""
Módulo de Ventas - libro de cobros

- Registro de pagos cobrados y agendados por venta
- Resumen de cobro recalculado en cada lectura (nunca persistido)
- Planificador de cuotas con creación secuencial de pagos pendientes
- Reglas de edición y eliminación (pagos protegidos por documento fiscal)
"""
