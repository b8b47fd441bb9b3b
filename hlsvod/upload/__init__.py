"""
视频上传模块
"""
