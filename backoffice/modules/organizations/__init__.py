"""
Organizaciones y clientes: solo lectura, como contexto fiscal de las ventas.
"""
