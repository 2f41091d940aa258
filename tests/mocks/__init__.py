class MockData:
    """Mock data for testing"""
    @staticmethod
    def get_product_types():
        return ['netflix', 'spotify', 'chatgpt']

    @staticmethod
    def get_buyer():
        return {'id': 'buyer-1', 'username': 'buyer_one', 'credit': 500000}
