"""
SlabDesk - PSA certification cache and eBay snipe-bid tracking
"""
