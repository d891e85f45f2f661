"""
ShopChat - product support chat backend.
"""
