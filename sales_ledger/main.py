from fastapi import FastAPI

from sales_ledger.middleware import install_error_handling
from sales_ledger.routers import payments, proforma_invoices, quotations

app = FastAPI(title='Sales Ledger')

install_error_handling(app)

app.include_router(quotations.router)
app.include_router(proforma_invoices.router)
app.include_router(payments.router)


@app.get('/health')
def health() -> dict:
    return {'success': True, 'status': 'ok'}
