"""
Target resolution, engine orchestration and result collection.
"""
