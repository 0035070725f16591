"""
Small building blocks shared by the other packages.
"""
