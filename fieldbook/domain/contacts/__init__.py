"""Contact domain - requester identity shared by appointments and quotes"""
