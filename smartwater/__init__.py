"""Smart Water Pools API"""
