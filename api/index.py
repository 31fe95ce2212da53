from mangum import Mangum

from ledger.api import create_app

# Lambda entry point. API Gateway websockets are not bridged, so realtime
# sync is only available when the app runs under uvicorn.
app = create_app(root_path="/api")

handler = Mangum(app)
