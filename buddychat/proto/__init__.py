"""Protobuf messages and gRPC service classes for ``chat.proto``.

The modules are compiled from the .proto file at import time by
grpcio-tools, so no generated sources are kept in the tree.
"""
import grpc

chat_pb2, chat_pb2_grpc = grpc.protos_and_services("buddychat/proto/chat.proto")
