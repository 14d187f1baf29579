"""
addon_api — Routing layer and adapters for the mock add-on platform.

handler.dispatch() is the in-process request contract; handler.lambda_handler
and server.create_app() expose the same routes over API Gateway and HTTP.
"""
