from fund_engine.oracle.client import OracleClient, OracleError, RequestSigner, build_request_message

__all__ = ["OracleClient", "OracleError", "RequestSigner", "build_request_message"]
