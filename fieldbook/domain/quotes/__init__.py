"""Quote domain - quote requests and their lifecycle"""
