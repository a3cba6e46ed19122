from mangum import Mangum

from credit_ledger.api import app

app.root_path = "/api"

handler = Mangum(app)
