"""
HLS 点播打包与 Range 视频服务

- transcode: 调用 FFmpeg 生成多码率 HLS，并维护转码任务
- storage: 本地文件系统与 R2 对象存储两种后端
- streaming: Range 解析、分段响应、流目录
- upload: 上传入口
"""

__version__ = "1.0.0"
